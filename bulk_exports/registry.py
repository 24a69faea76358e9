"""Registry of row encoders by export format."""

from typing import Optional, Type

from bulk_exports.models import ExportFormat


class EncoderRegistry:
    """Registry for output encoders."""

    def __init__(self):
        self._encoders: dict[str, Type] = {}

    def encoder(self, format: ExportFormat):
        """
        Decorator to register an encoder class for a format.

        Usage:
            @registry.encoder(ExportFormat.CSV)
            class CsvEncoder(RowEncoder):
                ...
        """

        def decorator(cls: Type):
            self._encoders[ExportFormat(format).value] = cls
            return cls

        return decorator

    def get_encoder(self, format: ExportFormat) -> Optional[Type]:
        """Get an encoder class by format."""
        return self._encoders.get(ExportFormat(format).value)

    def all_encoders(self) -> dict[str, Type]:
        """Get all registered encoders."""
        return self._encoders.copy()


# Global registry instance
encoder_registry = EncoderRegistry()
