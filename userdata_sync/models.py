from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

TICKS_PER_MILLISECOND = 10000


def state_key(user_id: str, item_id: str) -> str:
    return f"{user_id}:{item_id}"


class Server(BaseModel):
    id: str
    name: str
    address: str
    version: Optional[str] = None

class User(BaseModel):
    id: str
    name: str
    server_id: str
    access_token: Optional[str] = None
    primary_image_tag: Optional[str] = None

class UserPlaybackState(BaseModel):
    user_id: str
    item_id: str
    played: bool = False
    favorite: bool = False
    playback_position_ticks: int = Field(default=0, ge=0)
    dirty: bool = False

    # Local bookkeeping
    mutated_at: float = 0.0  # wall clock of the last local mutation
    revision: int = 0        # bumped by every local mutation

    # What we last learned from the server
    server_version: Optional[int] = None
    server_updated_at: Optional[float] = None
    synced_at: Optional[float] = None

    @property
    def key(self) -> str:
        return state_key(self.user_id, self.item_id)

    def same_fields(self, other) -> bool:
        return (
            self.played == other.played
            and self.favorite == other.favorite
            and self.playback_position_ticks == other.playback_position_ticks
        )

class RemoteUserData(BaseModel):
    """User data for one item as reported by the media server."""
    item_id: str
    played: bool = False
    favorite: bool = False
    playback_position_ticks: int = Field(default=0, ge=0)
    updated_at: Optional[float] = None
    version: Optional[int] = None

class PushStatus(str, Enum):
    ACK = "ack"
    CONFLICT = "conflict"
    ERROR = "error"

class PushResult(BaseModel):
    status: PushStatus
    remote: Optional[RemoteUserData] = None
    detail: Optional[str] = None

    @classmethod
    def ack(cls, remote: Optional[RemoteUserData] = None) -> "PushResult":
        return cls(status=PushStatus.ACK, remote=remote)

    @classmethod
    def conflict(cls, remote: RemoteUserData) -> "PushResult":
        return cls(status=PushStatus.CONFLICT, remote=remote)

    @classmethod
    def error(cls, detail: str) -> "PushResult":
        return cls(status=PushStatus.ERROR, detail=detail)

class SyncReport(BaseModel):
    started_at: float = 0.0
    finished_at: float = 0.0
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    remote_wins: int = 0
    skipped_users: int = 0
    aborted_servers: List[str] = Field(default_factory=list)

    @property
    def should_retry(self) -> bool:
        if self.aborted_servers:
            return True
        return self.synced == 0 and self.failed > 0

class StoreState(BaseModel):
    servers: Dict[str, Server] = Field(default_factory=dict)
    users: Dict[str, User] = Field(default_factory=dict)
    user_data: Dict[str, UserPlaybackState] = Field(default_factory=dict)  # keyed by state_key()
    last_successful_sync: float = 0.0
