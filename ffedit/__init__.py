"""ffedit: upload, edit and stream media through ffmpeg behind a small HTTP API."""

__version__ = "0.1.0"
