from __future__ import annotations

from receipt_intake.core.config import Settings
from receipt_intake.core.db import Database
from receipt_intake.core.errors import ConfigurationError
from receipt_intake.core.logging import get_logger, log_event
from receipt_intake.core.storage import FileStaging

logger = get_logger(__name__)


def require_credentials(settings: Settings) -> None:
    if not (settings.gemini_api_key or "").strip():
        raise ConfigurationError("GEMINI_API_KEY is not set; refusing to start.")


async def bootstrap(*, settings: Settings, db: Database, staging: FileStaging) -> None:
    """Startup checks; any failure here is fatal for the process."""
    require_credentials(settings)

    purged = await staging.prepare(purge_staging=settings.purge_staging_on_startup)
    await db.create_all()

    log_event(
        logger,
        "bootstrap.ready",
        environment=settings.environment,
        staging_dir=str(staging.staging_dir),
        storage_root=str(staging.storage_root),
        purged_staged_files=purged if settings.purge_staging_on_startup else None,
    )
