"""
tidytalk - dictation with rule-based formatting and guarded LLM refinement.

Records audio, transcribes it with Whisper, formats the transcript with
deterministic rules and optionally lets a local language model add
structure without changing a single spoken word.
"""

__version__ = "0.2.0"
__description__ = "Dictation with rule-based formatting and guarded local LLM refinement"
