"""Agent module -- the process that runs inside each agent container.

    python -m flotilla.agent                agent loop (stdin -> markers on stdout)
    python -m flotilla.agent.ipc_server     IPC tool server (MCP over stdio)
    python -m flotilla.agent.memory_server  memory tool server (MCP over stdio)
"""
