from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    DETECTIVE = "detective"
    CHARACTER_CONTROLLER = "characterController"
    OBSERVER = "observer"  # read-only seat, any number per room when allowed


# Seats that can be claimed through quick match; observers join by code only
QUEUEABLE_ROLES = (Role.DETECTIVE, Role.CHARACTER_CONTROLLER)


class RoomStatus(str, Enum):
    FORMING = "forming"   # waiting for both seats to be filled
    ACTIVE = "active"
    CLOSED = "closed"


# The four fixed suspects of every case, in display order.
SUSPECTS: List[str] = [
    "Mrs. Bellamy",
    "Mr. Holloway",
    "Tommy the Janitor",
    "Dr. Adrian Blackwood",
]

_SUSPECTS_BY_KEY: Dict[str, str] = {name.lower(): name for name in SUSPECTS}


def canonical_suspect(name: str) -> Optional[str]:
    """Case-insensitive lookup; returns the canonical suspect name or None."""
    return _SUSPECTS_BY_KEY.get(" ".join(str(name).split()).lower())


class Room(BaseModel):
    code: str
    display_name: Optional[str] = None
    status: RoomStatus = RoomStatus.FORMING
    case_ref: str = "default"
    created_at: datetime = Field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        """Listing representation, metadata only."""
        return {
            "code": self.code,
            "displayName": self.display_name,
            "status": self.status.value,
        }


class RoleBinding(BaseModel):
    room_code: str
    role: Role
    connection_id: str
    identity: Optional[str] = None
    bound_at: datetime = Field(default_factory=_utcnow)


class CharacterLock(BaseModel):
    """Write-once claim of a suspect by the character controller."""

    model_config = ConfigDict(frozen=True)

    character: str
    owner: str                            # connection id that made the claim
    owner_identity: Optional[str] = None  # verified identity at claim time, if any
    locked_at: datetime = Field(default_factory=_utcnow)


class PendingQuestion(BaseModel):
    correlation_id: str
    character: str
    question_text: str
    asked_by: str  # detective connection id
    created_at: datetime = Field(default_factory=_utcnow)
    deadline: datetime
    acknowledged_at: Optional[datetime] = None


class InterrogationEntry(BaseModel):
    """One delivered answer. Deliberately carries no answer source."""

    character: str
    question: str
    answer: str
    answered_at: datetime = Field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {
            "character": self.character,
            "question": self.question,
            "answer": self.answer,
            "answeredAt": self.answered_at.isoformat(),
        }


# ── Case data (owned by the external narrative store) ─────────────────────────

class SuspectDossier(BaseModel):
    name: str
    description: str = ""
    alibi: str = ""
    secret: str = ""
    voice: str = ""  # speaking-style hint for the automated answerer


class CaseFile(BaseModel):
    case_ref: str
    title: str = ""
    summary: str = ""
    suspects: List[SuspectDossier] = []

    def dossier(self, character: str) -> Optional[SuspectDossier]:
        for suspect in self.suspects:
            if suspect.name == character:
                return suspect
        return None


# ── WebSocket message shapes ──────────────────────────────────────────────────

class WSMessage(BaseModel):
    type: str
    data: Dict[str, Any] = {}


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    preferredCode: Optional[str] = None
    displayName: Optional[str] = None


class RoomResponse(BaseModel):
    code: str
    displayName: Optional[str] = None
    status: RoomStatus


class RoomDetailResponse(RoomResponse):
    detectivePresent: bool = False
    controllerPresent: bool = False
    observerCount: int = 0
