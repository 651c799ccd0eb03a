from agentfleet.state.journal import JournalError, SessionJournal
from agentfleet.state.persistence import DebouncedScheduler, PersistenceGateway
from agentfleet.state.registry import InstanceRegistry

__all__ = [
    "DebouncedScheduler",
    "InstanceRegistry",
    "JournalError",
    "PersistenceGateway",
    "SessionJournal",
]
