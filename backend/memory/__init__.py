from .database import SQLiteMemoryDB
from .outbox_store import EmailOutboxStore
from .patient_store import PatientStore
from .service import MemoryService, canonical_payload_hash
from .transcript_store import TranscriptStore

__all__ = [
    "SQLiteMemoryDB",
    "MemoryService",
    "EmailOutboxStore",
    "PatientStore",
    "TranscriptStore",
    "canonical_payload_hash",
]
