"""
File lifecycle state machine.
"""

from .file_lifecycle import FileLifecycle
from .transitions import (
    STAGE_TRANSITIONS,
    STATUS_TRANSITIONS,
    can_process_file,
    can_transition,
    is_file_available_for_mapping,
    is_file_processing_complete,
)

__all__ = [
    "FileLifecycle",
    "STATUS_TRANSITIONS",
    "STAGE_TRANSITIONS",
    "can_transition",
    "can_process_file",
    "is_file_available_for_mapping",
    "is_file_processing_complete",
]
