"""Store -- facade composing the persistence managers.

Callers reach every table through one object::

    store = Store(database, timezone=settings.timezone)
    agent = await store.agents.get_orchestrator()
    await store.conversations.append_turns(conv_id, turns)
"""

from flotilla.storage.agents import AgentManager
from flotilla.storage.conversations import ConversationManager
from flotilla.storage.database import Database
from flotilla.storage.memories import MemoryManager
from flotilla.storage.messages import MessageLogManager
from flotilla.storage.state import StateManager, ToolServerManager
from flotilla.storage.tasks import TaskManager


class Store:
    def __init__(self, database: Database, timezone: str = "UTC") -> None:
        self.db = database
        self.agents = AgentManager(database)
        self.conversations = ConversationManager(database)
        self.tasks = TaskManager(database, timezone)
        self.memories = MemoryManager(database)
        self.messages = MessageLogManager(database)
        self.state = StateManager(database)
        self.tool_servers = ToolServerManager(database)
