"""xcompress - restic backup orchestration from TOML job files."""

__version__ = "1.3.0"
