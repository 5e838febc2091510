from .buffer import (
    CaptionFragment,
    Direction,
    FragmentVerdict,
    TranscriptBuffer,
    last_n_words,
)
from .reconciler import CaptionReconciler
from .synchronizer import CaptionSynchronizer

__all__ = [
    "CaptionFragment",
    "Direction",
    "FragmentVerdict",
    "TranscriptBuffer",
    "last_n_words",
    "CaptionReconciler",
    "CaptionSynchronizer",
]
