"""The [logging] config section."""

from pathlib import Path
from typing import Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .logging import setup_logging


class LoggingConfig(BaseModel):
    """Console level and format, plus an optional rotating JSON log file."""

    model_config = ConfigDict(extra='forbid')

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["simple", "detailed", "json"] = Field(
        default="simple",
        description="Console format; the log file is always JSON lines"
    )
    file: str | None = Field(default=None, description="Rotating log file path")
    max_file_size_mb: int = Field(default=10, ge=1, le=1024)
    backup_count: int = Field(default=5, ge=0, le=100)

    @field_validator('level', 'format', mode='before')
    @classmethod
    def fold_case(cls, v, info):
        # DEBUG/debug and JSON/json are both accepted
        if not isinstance(v, str):
            return v
        return v.upper() if info.field_name == 'level' else v.lower()

    def apply(self) -> None:
        """Install these settings on the root logger."""
        setup_logging(
            level=self.level,
            format=self.format,
            log_file=Path(self.file) if self.file else None,
            max_file_size_mb=self.max_file_size_mb,
            backup_count=self.backup_count,
        )
