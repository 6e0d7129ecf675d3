"""Host background loops.

IpcWatcher drains container -> host IPC channels, TaskCommandProcessor
applies the task and agent commands it finds there, and TaskScheduler
fires due scheduled tasks. All three follow the same start()/stop()
lifecycle driven by flotilla.main.
"""
