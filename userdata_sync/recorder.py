import logging
import time
from typing import Optional
from .models import TICKS_PER_MILLISECOND, UserPlaybackState
from .state import PlaybackStateStore

logger = logging.getLogger(__name__)

class MutationRecorder:
    """
    Records local playback events as dirty rows and asks for a sync pass.

    Only local storage is touched; store failures propagate to the caller since
    a dropped write would lose the user's change.
    """

    def __init__(self, store: PlaybackStateStore, scheduler):
        self.store = store
        self.scheduler = scheduler

    def record(self, user_id: str, item_id: str, played: Optional[bool] = None,
               favorite: Optional[bool] = None, position_ticks: Optional[int] = None) -> UserPlaybackState:
        if position_ticks is not None and position_ticks < 0:
            raise ValueError(f"Playback position must not be negative, got {position_ticks}")

        def apply(state: UserPlaybackState):
            if played is not None:
                state.played = played
            if favorite is not None:
                state.favorite = favorite
            if position_ticks is not None:
                state.playback_position_ticks = position_ticks
            state.dirty = True
            state.mutated_at = time.time()
            state.revision += 1

        state = self.store.update(user_id, item_id, apply)
        logger.info(f"Saved user data locally for item {item_id} (rev {state.revision}, will sync when online)")

        self.scheduler.request_sync("mutation")
        return state

    def mark_played(self, user_id: str, item_id: str) -> UserPlaybackState:
        return self.record(user_id, item_id, played=True, position_ticks=0)

    def mark_unplayed(self, user_id: str, item_id: str) -> UserPlaybackState:
        return self.record(user_id, item_id, played=False)

    def set_favorite(self, user_id: str, item_id: str, favorite: bool = True) -> UserPlaybackState:
        return self.record(user_id, item_id, favorite=favorite)

    def update_position_ticks(self, user_id: str, item_id: str, position_ticks: int) -> UserPlaybackState:
        return self.record(user_id, item_id, position_ticks=position_ticks)

    def update_position_ms(self, user_id: str, item_id: str, position_ms: int) -> UserPlaybackState:
        return self.record(user_id, item_id, position_ticks=position_ms * TICKS_PER_MILLISECOND)
