from .translator import CaptionTranslator, create_translation_backend

__all__ = ["CaptionTranslator", "create_translation_backend"]
