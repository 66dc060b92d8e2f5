"""Chargement du catalogue de badges.

Priorité à la table ``badges``; en mode local (``LOCAL_BADGES_MODE``) ou si la
base ne répond pas, on lit le fichier ``badges.json`` (un tableau de lignes).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import badge_crud
from app.gamification.catalog import BadgeCatalog

logger = logging.getLogger(__name__)


def load_local_rows(path: Union[str, Path, None] = None) -> List[Dict[str, Any]]:
    target = Path(path or settings.LOCAL_BADGES_FILE)
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("badges.json introuvable ou invalide (%s): %s", target, exc)
        return []
    if not isinstance(data, list):
        logger.warning("%s doit contenir un tableau.", target)
        return []
    return [row for row in data if isinstance(row, dict)]


def load_catalog(db: Optional[Session] = None, local_path: Union[str, Path, None] = None) -> BadgeCatalog:
    if settings.LOCAL_BADGES_MODE or db is None:
        return BadgeCatalog.from_rows(load_local_rows(local_path))

    try:
        rows = badge_crud.list_badge_rows(db)
    except SQLAlchemyError as exc:
        logger.warning("Catalogue indisponible en base (%s), repli sur le fichier local.", exc)
        db.rollback()
        rows = load_local_rows(local_path)
        if not rows:
            logger.error("Impossible de charger les badges.")
    return BadgeCatalog.from_rows(rows)
