"""Health check router."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prospect_research.core.dependencies import ServiceContainer, get_container
from prospect_research.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


def load_alembic_head() -> Optional[str]:
    """Newest revision shipped with the code, or None when alembic files are absent."""
    project_root = Path(__file__).resolve().parents[2]
    cfg_path = project_root / "alembic.ini"
    script_location = project_root / "alembic"
    if not cfg_path.exists() or not script_location.exists():
        return None

    config = Config(str(cfg_path))
    config.set_main_option("script_location", str(script_location))
    return ScriptDirectory.from_config(config).get_current_head()


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Database reachability, migration state and the active research setup."""
    db_ok = False
    alembic_current: Optional[str] = None
    try:
        await db.execute(text("SELECT 1"))
        db_ok = True
        version = await db.execute(text("SELECT version_num FROM alembic_version"))
        alembic_current = version.scalar_one_or_none()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health check database probe failed: %s", exc)

    alembic_head = load_alembic_head()
    return {
        "api_ok": True,
        "db_ok": db_ok,
        "alembic_head_ok": bool(alembic_current and alembic_current == alembic_head),
        "alembic_current": alembic_current,
        "alembic_head": alembic_head,
        "research_backends": [backend.name for backend in container.executor.backends],
        "pending_side_effects": container.side_effects.pending,
        "cache_memory_entries": container.cache.memory_size,
    }
