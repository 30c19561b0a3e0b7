"""Survey configuration catalog.

Loads survey JSON files once at startup (the bundled `app/surveys/` directory
plus an optional operator directory), validates each into a SurveyConfig and
compiles it into a CompiledSchema. Lookups on the request path are plain
dictionary reads.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional

from app.logic.schema_compiler import CompiledSchema, compile_schema
from app.models.survey import SurveyConfig, SurveyConfigError, load_survey_config


logger = logging.getLogger(__name__)

BUNDLED_SURVEYS_DIR = Path(__file__).resolve().parent.parent / "surveys"


@dataclass(frozen=True)
class SurveyEntry:
    config: SurveyConfig
    schema: CompiledSchema

    @property
    def survey_id(self) -> str:
        return self.config.survey_id


def load_survey_file(path: str | os.PathLike[str]) -> SurveyConfig:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SurveyConfigError(f"cannot read survey configuration {p.name}: {exc}") from exc
    return load_survey_config(data)


def _iter_json(directory: Path) -> Iterator[Path]:
    if not directory.is_dir():
        return
    yield from sorted(directory.glob("*.json"))


class SurveyCatalog:
    def __init__(self, configs: Iterable[SurveyConfig] = ()) -> None:
        self._entries: Dict[str, SurveyEntry] = {}
        for config in configs:
            self.add(config)

    @classmethod
    def from_directories(cls, *directories: Optional[str | os.PathLike[str]]) -> "SurveyCatalog":
        """Load every `*.json` survey; later directories override earlier ids.

        A malformed file is a deployment error and aborts startup.
        """
        catalog = cls()
        for directory in directories:
            if directory is None:
                continue
            for path in _iter_json(Path(directory)):
                catalog.add(load_survey_file(path))
        return catalog

    def add(self, config: SurveyConfig) -> SurveyEntry:
        if config.survey_id in self._entries:
            logger.warning("survey_catalog.override survey=%s", config.survey_id)
        entry = SurveyEntry(config=config, schema=compile_schema(config))
        self._entries[config.survey_id] = entry
        return entry

    def get(self, survey_id: str) -> Optional[SurveyEntry]:
        return self._entries.get(survey_id)

    def ids(self) -> list[str]:
        return sorted(self._entries)

    def longest_window_minutes(self, default: int) -> int:
        """Widest rate-limit window any survey asks for, at least `default`."""
        windows = [e.config.security.rate_limit_window_minutes or default for e in self._entries.values()]
        return max([default, *windows])

    def __contains__(self, survey_id: object) -> bool:
        return survey_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "BUNDLED_SURVEYS_DIR",
    "SurveyCatalog",
    "SurveyEntry",
    "load_survey_file",
]
