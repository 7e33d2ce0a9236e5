"""Allow running the ingestor with ``python -m dealsync``."""

from dealsync.main import app

app()
