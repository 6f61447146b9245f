"""
Core services for the application.

This package contains the baseline engine, the anomaly detector, the
conversation state machine, persistence, and the service that ties them
into the check-in pipeline.
"""

from .anomaly_detector import DEFAULT_RULES, AnomalyDetector
from .baseline import BaselineEngine
from .companion import CompanionService
from .conversation import ConversationStateMachine
from .messaging import MessageComposer, MessageTransport
from .result import Result
from .state_repository import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    RecordStore,
    StateRepository,
)

__all__ = [
    "DEFAULT_RULES",
    "AnomalyDetector",
    "BaselineEngine",
    "CompanionService",
    "ConversationStateMachine",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "MessageComposer",
    "MessageTransport",
    "RecordStore",
    "Result",
    "StateRepository",
]
