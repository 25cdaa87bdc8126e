"""Error types raised by skyscatter."""

from typing import Optional


class SkyscatterError(Exception):
    """Base exception for skyscatter-specific errors."""

    def __init__(self, message: str, suggestions: Optional[list] = None):
        """Initialize with message and optional suggestions.

        Args:
            message: Error description
            suggestions: Optional list of actionable suggestions
        """
        self.message = message
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with suggestions."""
        formatted = f"{self.message}"
        if self.suggestions:
            formatted += "\n\nSuggestions:"
            for suggestion in self.suggestions:
                formatted += f"\n  - {suggestion}"
        return formatted


class AtmosphereConfigError(SkyscatterError, ValueError):
    """Raised when atmosphere parameters or precompute options are invalid."""

    def __init__(self, field_name: str, reason: str, suggestions: Optional[list] = None):
        self.field_name = field_name
        super().__init__(f"Invalid {field_name}: {reason}", suggestions)


class PrecomputeInProgressError(SkyscatterError):
    """Raised when an update is requested while another run is in flight."""

    def __init__(self, stage_index: int, stage_count: int):
        message = f"A precomputation is already running (unit {stage_index}/{stage_count})"
        suggestions = [
            "Drain or cancel the active PrecomputeTask before starting another one",
        ]
        super().__init__(message, suggestions)


class PrecomputeCancelledError(SkyscatterError):
    """Raised when a blocking precomputation was cancelled before completion."""

    def __init__(self, completed_units: int, stage_count: int):
        message = f"Precomputation cancelled after {completed_units}/{stage_count} units"
        super().__init__(message, ["Previously published LUTs were left untouched"])


class ModelNotInitializedError(SkyscatterError, RuntimeError):
    """Raised when LUTs are requested before a successful precomputation."""

    def __init__(self):
        super().__init__(
            "Model not initialized. Call init() first.",
            ["Run AtmosphereModel.init()", "Or load textures with load_textures()"],
        )


class LUTFormatError(SkyscatterError):
    """Raised when a serialized LUT file is malformed or has an unexpected shape."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Cannot read LUT '{path}': {reason}")


class BufferLifetimeError(AssertionError):
    """Raised when two aliased scratch buffers would be live at the same time."""
