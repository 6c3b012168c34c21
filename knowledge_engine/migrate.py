"""
One-shot import of legacy JSON fact files.

Each ``*.json`` file in the directory holds one fact::

    {"fact": "...", "source": "user", "confidence": "high",
     "tags": ["..."], "timestamp": "2024-01-01T00:00:00.000Z"}

A migrated file is renamed to ``*.json.migrated`` so a second run skips it.
"""

from __future__ import annotations

import json
import logging
import os

from .errors import KnowledgeBaseError

logger = logging.getLogger(__name__)

MIGRATED_SUFFIX = ".migrated"


def _load_fact(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def migrate_json_dir(engine, directory: str) -> dict:
    """
    Ingest every legacy fact file in *directory*.

    Facts are chunked by sentence and stored as content type ``fact`` with
    their original timestamp.  A file that fails is logged and left in place.

    Returns
    -------
    dict
        ``{"migrated": n, "failed": m}``.
    """
    if not os.path.isdir(directory):
        logger.info("No legacy knowledge directory at %s", directory)
        return {"migrated": 0, "failed": 0}

    names = sorted(n for n in os.listdir(directory) if n.endswith(".json"))
    migrated = failed = 0
    for name in names:
        path = os.path.join(directory, name)
        try:
            data = _load_fact(path)
            text = data.get("fact") or data.get("text") or json.dumps(data)
            engine.ingest(
                text,
                title=(data.get("fact") or data.get("text") or "")[:80] or "Migrated entry",
                source=data.get("source") or "user",
                confidence=data.get("confidence") or "medium",
                tags=data.get("tags") or [],
                content_type="fact",
                strategy="sentence",
                created_at=data.get("timestamp"),
            )
            os.rename(path, path + MIGRATED_SUFFIX)
            migrated += 1
        except (OSError, ValueError, KnowledgeBaseError) as exc:
            logger.error("Failed to migrate %s: %s", name, exc)
            failed += 1

    if migrated:
        logger.info("Migrated %d knowledge entries from %s", migrated, directory)
    return {"migrated": migrated, "failed": failed}
