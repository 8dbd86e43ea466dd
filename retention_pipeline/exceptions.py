"""
Pipeline Exceptions
====================
Errors that abort a batch. Field-level conversion problems and data-quality
findings are not exceptions: they are recorded in the validation report.
"""


class PipelineError(Exception):
    """Base class for errors raised by the retention pipeline."""


class ConfigError(PipelineError):
    """Invalid pipeline configuration."""


class SchemaValidationError(PipelineError):
    """Source file does not carry the canonical record schema."""

    def __init__(self, missing: list[str], source: str):
        self.missing = missing
        self.source = source
        super().__init__(
            f"{source} is missing required column(s): {', '.join(missing)}"
        )


class ReferentialIntegrityError(PipelineError):
    """Facts reference institutions absent from the institution dimension."""

    def __init__(self, orphan_ids: list[int]):
        self.orphan_ids = orphan_ids
        preview = ", ".join(str(i) for i in orphan_ids[:10])
        super().__init__(
            f"{len(orphan_ids)} institution id(s) missing from dim_institution: {preview}"
        )
