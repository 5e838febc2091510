from .controller import TranscriptionLifecycleController

__all__ = ["TranscriptionLifecycleController"]
