"""
Video Status State Machine - explicit transition rules for the video lifecycle.

State Transition Diagram:
    UPLOADING ──> PROCESSING ──> PARTIAL_READY ──> READY
        │   │         │    │                        ^
        │   │         │    └────────────────────────┘
        │   v         v
        │ UPLOADED ──>│──> FAILED
        v             v
    CANCELLED <───────┘

Transitions are monotonic: a video never moves back towards ``uploading``.
Restoring a soft-deleted video is the only operation allowed to bypass these
rules, and it does so explicitly through ``VideoRepository.restore()``.

Note: checks are point-in-time. Callers that derive a new status from the
quality rows do so inside a transaction holding the video row lock.
"""

import logging
from typing import Dict, FrozenSet

from ingest.enums import VideoStatus

logger = logging.getLogger(__name__)

VIDEO_TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.UPLOADING: frozenset(
        {VideoStatus.UPLOADED, VideoStatus.PROCESSING, VideoStatus.CANCELLED, VideoStatus.FAILED}
    ),
    VideoStatus.UPLOADED: frozenset({VideoStatus.PROCESSING, VideoStatus.CANCELLED, VideoStatus.FAILED}),
    VideoStatus.PROCESSING: frozenset(
        {VideoStatus.PARTIAL_READY, VideoStatus.READY, VideoStatus.FAILED, VideoStatus.CANCELLED}
    ),
    VideoStatus.PARTIAL_READY: frozenset({VideoStatus.READY}),
    VideoStatus.READY: frozenset(),
    VideoStatus.FAILED: frozenset(),
    VideoStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[VideoStatus] = frozenset(
    {VideoStatus.READY, VideoStatus.PARTIAL_READY, VideoStatus.FAILED, VideoStatus.CANCELLED}
)

PLAYABLE_STATUSES: FrozenSet[VideoStatus] = frozenset({VideoStatus.READY, VideoStatus.PARTIAL_READY})


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    """
    Check whether ``current -> target`` is allowed.

    A no-op transition (same status) is always allowed so that re-running a
    reconciliation is harmless.
    """
    if current == target:
        return True
    return target in VIDEO_TRANSITIONS.get(current, frozenset())


def is_terminal(status: VideoStatus) -> bool:
    """True for statuses with no automatic way forward (partial_ready may still reach ready)."""
    return status in TERMINAL_STATUSES


def is_playable(status: VideoStatus) -> bool:
    """True when at least one quality can be streamed."""
    return status in PLAYABLE_STATUSES
