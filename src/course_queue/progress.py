"""Best-effort classification of Analyzer stdout lines into progress updates.

The Analyzer prints free-form, partly localized text. Each line is matched, in
order, against:

1. step announcements: ``Étape 2/6: ...``, ``Step 3 of 6: ...``, ``Step 3/6 ...``
2. bracketed tags: ``[PROGRESS] ...``, ``[DEV-PROGRESS] ...``
3. JSON log lines whose ``msg`` contains a known phrase
4. bare ratios: ``3/6 completed``, ``Processing 2 of 6 chapters``
5. action keywords mapped to one of the pipeline stages

Anything else yields ``None``; parsing never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from course_queue.yaml_io import load_yaml_mapping

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_FRENCH_STEP_RE = re.compile(r"^étape\s+(\d+)\s*(?:/\s*(\d+)|\s+sur\s+(\d+))?\s*[:.\-]?\s*(.*)$", re.I)
_ENGLISH_STEP_RE = re.compile(r"^step\s+(\d+)\s*(?:/\s*(\d+)|\s+of\s+(\d+))?\s*[:.\-]?\s*(.*)$", re.I)
_TAG_RE = re.compile(r"^\[(?:dev-)?progress\]\s*(.*)$", re.I)
_RATIO_RE = re.compile(r"^(?:processing\s+)?(\d+)\s*(?:/\s*|\s+of\s+)(\d+)\b", re.I)
_MAX_TOTAL_STEPS = 100


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    """One recognized progress report."""

    step: int | None
    total_steps: int
    message: str


@dataclass(slots=True, frozen=True)
class Stage:
    """A pipeline stage with its localized labels and trigger keywords."""

    key: str
    step: int
    labels: dict[str, str]
    keywords: tuple[str, ...]

    def label(self, language: str) -> str:
        return self.labels.get(language) or self.labels.get("en") or self.key


@dataclass(slots=True, frozen=True)
class StageTable:
    """Keyword to stage mapping; replaceable from a YAML file."""

    stages: tuple[Stage, ...]
    json_phrases: tuple[tuple[str, str], ...] = ()
    language: str = "en"
    _keyword_patterns: tuple[tuple[re.Pattern[str], Stage], ...] = field(
        init=False,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("Stage table must define at least one stage")
        steps = [stage.step for stage in self.stages]
        if sorted(steps) != list(range(1, len(steps) + 1)):
            raise ValueError("Stage steps must be 1..N without gaps")
        patterns = tuple(
            (re.compile(rf"\b{re.escape(keyword.lower())}"), stage)
            for stage in self.stages
            for keyword in stage.keywords
        )
        object.__setattr__(self, "_keyword_patterns", patterns)

    @property
    def total_steps(self) -> int:
        return len(self.stages)

    def stage_for_step(self, step: int) -> Stage | None:
        for stage in self.stages:
            if stage.step == step:
                return stage
        return None

    def stage_for_key(self, key: str) -> Stage | None:
        for stage in self.stages:
            if stage.key == key:
                return stage
        return None

    def match_keyword(self, lowered: str) -> Stage | None:
        for pattern, stage in self._keyword_patterns:
            if pattern.search(lowered):
                return stage
        return None


DEFAULT_STAGE_TABLE = StageTable(
    stages=(
        Stage(
            key="extract",
            step=1,
            labels={"en": "Extracting abstractions", "fr": "Extraction des abstractions"},
            keywords=("extracting", "extraction"),
        ),
        Stage(
            key="relate",
            step=2,
            labels={"en": "Analyzing relationships", "fr": "Analyse des relations"},
            keywords=("analyzing", "relationships"),
        ),
        Stage(
            key="order",
            step=3,
            labels={"en": "Ordering chapters", "fr": "Ordonnancement des chapitres"},
            keywords=("ordering", "organizing", "determining"),
        ),
        Stage(
            key="generate",
            step=4,
            labels={"en": "Generating chapters", "fr": "Génération des chapitres"},
            keywords=("generating", "writing"),
        ),
        Stage(
            key="review",
            step=5,
            labels={"en": "Reviewing chapters", "fr": "Révision des chapitres"},
            keywords=("reviewing", "enhancing"),
        ),
        Stage(
            key="tutorialize",
            step=6,
            labels={"en": "Creating tutorials", "fr": "Création des tutoriels"},
            keywords=("tutorial", "building"),
        ),
    ),
    json_phrases=(
        ("Starting codebase analysis", "extract"),
        ("Extracting core abstractions", "extract"),
        ("Analyzing relationships", "relate"),
        ("Determining optimal chapter order", "order"),
        ("Generating chapter content", "generate"),
        ("Reviewing and enhancing", "review"),
        ("Analysis complete", "tutorialize"),
    ),
)


def normalize_line(line: str) -> str:
    return _WHITESPACE_RE.sub(" ", line).strip()


def parse_progress_line(line: str, table: StageTable = DEFAULT_STAGE_TABLE) -> ProgressUpdate | None:
    """Classify one stdout line; returns None when nothing is recognized."""

    text = normalize_line(line)
    if not text:
        return None

    update = _parse_step_announcement(text, table)
    if update is not None:
        return update

    tag = _TAG_RE.match(text)
    if tag is not None:
        body = tag.group(1).strip()
        if not body:
            return None
        inner = _parse_untagged(body, table)
        if inner is not None and inner.step is not None:
            return inner
        return ProgressUpdate(step=None, total_steps=table.total_steps, message=body)

    return _parse_untagged(text, table)


def _parse_untagged(text: str, table: StageTable) -> ProgressUpdate | None:
    update = _parse_step_announcement(text, table)
    if update is not None:
        return update
    if text.startswith("{") and '"msg"' in text:
        return _parse_json_line(text, table)

    ratio = _RATIO_RE.match(text)
    if ratio is not None:
        step, total = int(ratio.group(1)), int(ratio.group(2))
        if _plausible(step, total):
            return ProgressUpdate(step=step, total_steps=total, message=text)

    stage = table.match_keyword(text.lower())
    if stage is not None:
        return ProgressUpdate(
            step=stage.step,
            total_steps=table.total_steps,
            message=stage.label(table.language),
        )
    return None


def _parse_step_announcement(text: str, table: StageTable) -> ProgressUpdate | None:
    for pattern, language in ((_FRENCH_STEP_RE, "fr"), (_ENGLISH_STEP_RE, "en")):
        match = pattern.match(text)
        if match is None:
            continue
        step = int(match.group(1))
        total_raw = match.group(2) or match.group(3)
        total = int(total_raw) if total_raw else table.total_steps
        if not _plausible(step, total):
            return None
        stage = table.stage_for_step(step)
        message = match.group(4).strip() or (stage.label(language) if stage else f"Step {step}")
        return ProgressUpdate(step=step, total_steps=total, message=message)
    return None


def _parse_json_line(text: str, table: StageTable) -> ProgressUpdate | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    msg = payload.get("msg")
    if not isinstance(msg, str):
        return None
    for phrase, stage_key in table.json_phrases:
        if phrase in msg:
            stage = table.stage_for_key(stage_key)
            if stage is None:
                return None
            return ProgressUpdate(
                step=stage.step,
                total_steps=table.total_steps,
                message=stage.label(table.language),
            )
    return None


def _plausible(step: int, total: int) -> bool:
    return 0 < total <= _MAX_TOTAL_STEPS and 0 <= step <= total


class ProgressTracker:
    """Per-job wrapper that suppresses repeated identical updates."""

    def __init__(self, table: StageTable = DEFAULT_STAGE_TABLE) -> None:
        self.table = table
        self.last: ProgressUpdate | None = None

    def feed(self, line: str) -> ProgressUpdate | None:
        update = parse_progress_line(line, self.table)
        if update is None or update == self.last:
            return None
        self.last = update
        return update


def load_stage_table(path: Path) -> StageTable:
    """Build a stage table from YAML.

    Expected layout::

        language: fr
        stages:
          - key: extract
            labels: {en: Extracting abstractions, fr: Extraction des abstractions}
            keywords: [extracting, extraction]
        json_phrases:
          Starting codebase analysis: extract
    """

    raw = load_yaml_mapping(path, what="Progress keyword table")
    raw_stages = raw.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ValueError(f"'stages' must be a non-empty list: {path}")

    stages = tuple(_stage_from_mapping(item, step=index) for index, item in enumerate(raw_stages, 1))
    raw_phrases = raw.get("json_phrases") or {}
    if not isinstance(raw_phrases, dict):
        raise ValueError(f"'json_phrases' must be a mapping: {path}")
    keys = {stage.key for stage in stages}
    unknown = sorted(str(value) for value in raw_phrases.values() if value not in keys)
    if unknown:
        raise ValueError(f"'json_phrases' reference unknown stages {unknown}: {path}")

    table = StageTable(
        stages=stages,
        json_phrases=tuple((str(phrase), str(key)) for phrase, key in raw_phrases.items()),
        language=str(raw.get("language") or "en"),
    )
    logger.info("Loaded progress keyword table with %s stages from %s", len(stages), path)
    return table


def _stage_from_mapping(item: Any, *, step: int) -> Stage:
    if not isinstance(item, dict) or not item.get("key"):
        raise ValueError(f"Stage #{step} must be a mapping with a 'key'")
    labels = item.get("labels") or {}
    keywords = item.get("keywords") or []
    if not isinstance(labels, dict) or not isinstance(keywords, list):
        raise ValueError(f"Stage {item['key']!r}: 'labels' must be a mapping, 'keywords' a list")
    return Stage(
        key=str(item["key"]),
        step=step,
        labels={str(lang): str(label) for lang, label in labels.items()},
        keywords=tuple(str(keyword).lower() for keyword in keywords),
    )
