"""Narrative definition files.

A narrative is a JSON file holding one NarrativeDefinition:

    {
      "name": "weekly_digest",
      "target_table": "digests",
      "acts": [
        {"name": "draft",
         "inputs": [{"kind": "table", "table_name": "posts", "row_limit": 20}],
         "generation": {"model": "gpt-4o-mini", "max_tokens": 800}},
        {"name": "structure",
         "inputs": [{"kind": "text", "literal": "Turn this into JSON: {{draft.response}}"}],
         "generation": {"model": "gpt-4o-mini", "max_tokens": 800},
         "processors": ["extract_json"]}
      ]
    }
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from storyloom.errors import ConfigError
from storyloom.models import NarrativeDefinition

logger = logging.getLogger(__name__)


def load_narrative(path: Path) -> NarrativeDefinition:
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read narrative {path}: {e}") from e
    try:
        narrative = NarrativeDefinition.model_validate_json(text)
    except ValidationError as e:
        raise ConfigError(f"Invalid narrative {path}: {e}") from e
    logger.debug("loaded narrative %s acts=%s", narrative.name, narrative.act_order)
    return narrative


def load_narratives(paths: list[str], root: Path) -> dict[str, NarrativeDefinition]:
    """Load each distinct path once, keyed by the path as written in config."""
    loaded: dict[str, NarrativeDefinition] = {}
    for p in paths:
        if p in loaded:
            continue
        path = Path(p)
        if not path.is_absolute():
            path = root / path
        loaded[p] = load_narrative(path)
    return loaded
