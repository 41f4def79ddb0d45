from .gemini_client import GeminiClient, GeminiError
from .persona_backend import GeminiPersonaBackend

__all__ = ["GeminiClient", "GeminiError", "GeminiPersonaBackend"]
