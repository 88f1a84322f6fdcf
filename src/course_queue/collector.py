"""Collect Analyzer outputs from the well-known workspace directory."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from course_queue.queue.models import OutputDocumentWrite
from course_queue.yaml_io import load_yaml_document

logger = logging.getLogger(__name__)

OUTPUT_DIR_NAME = ".tutorial-output"
COLLECTION_INCOMPLETE = "collection_incomplete"

ABSTRACTIONS_FILE = "step1_abstractions.yaml"
RELATIONSHIPS_FILE = "step2_relationships.yaml"
CHAPTER_ORDER_FILE = "step3_order.yaml"

# (subdirectory, document kind)
DOCUMENT_DIRS: tuple[tuple[str, str], ...] = (
    ("chapters", "chapter"),
    ("reviewed-chapters", "reviewed_chapter"),
    ("tutorials", "tutorial"),
)

_NUMERIC_PREFIX_RE = re.compile(r"^(\d+)[_\-. ]*(.*)$")
_HEADING_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)


@dataclass(slots=True)
class Abstraction:
    name: str
    description: str
    file_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AbstractionsConfig:
    """``step1_abstractions.yaml``: a list of core abstractions."""

    abstractions: list[Abstraction]

    @classmethod
    def from_yaml(cls, raw: Any) -> AbstractionsConfig:
        if isinstance(raw, dict) and "abstractions" in raw:
            raw = raw["abstractions"]
        if not isinstance(raw, list):
            raise TypeError("abstractions must be a list")
        items: list[Abstraction] = []
        for position, item in enumerate(raw):
            if not isinstance(item, dict):
                raise TypeError(f"abstractions[{position}] must be a mapping")
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ValueError(f"abstractions[{position}].name must be a non-empty string")
            paths = item.get("file_paths") or []
            if not isinstance(paths, list):
                raise TypeError(f"abstractions[{position}].file_paths must be a list")
            items.append(
                Abstraction(
                    name=name.strip(),
                    description=str(item.get("description") or ""),
                    file_paths=[str(path) for path in paths],
                ),
            )
        return cls(abstractions=items)


@dataclass(slots=True)
class Relationship:
    from_abstraction: int
    to_abstraction: int
    label: str
    evidence: str = ""


@dataclass(slots=True)
class RelationshipsConfig:
    """``step2_relationships.yaml``: summary plus abstraction-to-abstraction edges."""

    summary: str
    relationships: list[Relationship]

    @classmethod
    def from_yaml(cls, raw: Any) -> RelationshipsConfig:
        if not isinstance(raw, dict):
            raise TypeError("relationships file must be a mapping")
        raw_items = raw.get("relationships") or []
        if not isinstance(raw_items, list):
            raise TypeError("relationships must be a list")
        items: list[Relationship] = []
        for position, item in enumerate(raw_items):
            if not isinstance(item, dict):
                raise TypeError(f"relationships[{position}] must be a mapping")
            try:
                source = int(item["from_abstraction"])
                target = int(item["to_abstraction"])
            except (KeyError, TypeError, ValueError) as error:
                raise ValueError(f"relationships[{position}] needs integer endpoints") from error
            items.append(
                Relationship(
                    from_abstraction=source,
                    to_abstraction=target,
                    label=str(item.get("label") or ""),
                    evidence=str(item.get("evidence") or ""),
                ),
            )
        return cls(summary=str(raw.get("summary") or ""), relationships=items)


@dataclass(slots=True)
class ChapterOrderItem:
    index: int
    name: str
    reasoning: str = ""


@dataclass(slots=True)
class ChapterOrderConfig:
    """``step3_order.yaml``: chapter sequence, sorted by index."""

    order: list[ChapterOrderItem]

    @classmethod
    def from_yaml(cls, raw: Any) -> ChapterOrderConfig:
        if not isinstance(raw, dict):
            raise TypeError("chapter order file must be a mapping")
        raw_items = raw.get("order")
        if not isinstance(raw_items, list):
            raise TypeError("order must be a list")
        items: list[ChapterOrderItem] = []
        for position, item in enumerate(raw_items):
            if not isinstance(item, dict):
                raise TypeError(f"order[{position}] must be a mapping")
            try:
                index = int(item["index"])
            except (KeyError, TypeError, ValueError) as error:
                raise ValueError(f"order[{position}].index must be an integer") from error
            items.append(
                ChapterOrderItem(
                    index=index,
                    name=str(item.get("name") or ""),
                    reasoning=str(item.get("reasoning") or ""),
                ),
            )
        items.sort(key=lambda entry: entry.index)
        return cls(order=items)


CONFIG_FILES: tuple[tuple[str, str, Any], ...] = (
    ("abstractions", ABSTRACTIONS_FILE, AbstractionsConfig),
    ("relationships", RELATIONSHIPS_FILE, RelationshipsConfig),
    ("chapter_order", CHAPTER_ORDER_FILE, ChapterOrderConfig),
)


@dataclass(slots=True)
class CollectionResult:
    """Everything the Analyzer left behind, in stable order."""

    documents: list[OutputDocumentWrite] = field(default_factory=list)
    abstractions: AbstractionsConfig | None = None
    relationships: RelationshipsConfig | None = None
    chapter_order: ChapterOrderConfig | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def document_count(self) -> int:
        return len(self.documents)

    def documents_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for document in self.documents:
            counts[document.kind] = counts.get(document.kind, 0) + 1
        return counts

    def configs_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name, _, _ in CONFIG_FILES:
            value = getattr(self, name)
            if value is not None:
                payload[name] = asdict(value)
        return payload


def collect_outputs(workspace: Path) -> CollectionResult:
    """Scan ``<workspace>/.tutorial-output``; missing pieces become warnings, never errors."""

    result = CollectionResult()
    output_dir = workspace / OUTPUT_DIR_NAME
    if not output_dir.is_dir():
        logger.info("No output directory found at %s", output_dir)
        result.warnings.append(f"output directory missing: {OUTPUT_DIR_NAME}")
        result.warnings.append(COLLECTION_INCOMPLETE)
        return result

    for attr, filename, record_type in CONFIG_FILES:
        path = output_dir / filename
        if not path.is_file():
            continue
        try:
            setattr(result, attr, record_type.from_yaml(load_yaml_document(path)))
        except (yaml.YAMLError, OSError, TypeError, ValueError, UnicodeDecodeError) as error:
            logger.warning("Could not parse %s: %s", path, error)
            result.warnings.append(f"unparseable config {filename}: {error}")

    for subdir, kind in DOCUMENT_DIRS:
        result.documents.extend(_collect_documents(output_dir / subdir, kind=kind, result=result))

    if not result.documents:
        result.warnings.append(COLLECTION_INCOMPLETE)
    logger.info(
        "Collected %s document(s) from %s",
        result.document_count,
        output_dir,
    )
    return result


def _collect_documents(
    directory: Path,
    *,
    kind: str,
    result: CollectionResult,
) -> list[OutputDocumentWrite]:
    if not directory.is_dir():
        return []

    numbered: list[tuple[int, str, Path]] = []
    unnumbered: list[Path] = []
    for path in directory.iterdir():
        if not path.is_file() or path.suffix.lower() != ".md":
            continue
        match = _NUMERIC_PREFIX_RE.match(path.stem)
        if match is not None:
            numbered.append((int(match.group(1)), path.name, path))
        else:
            unnumbered.append(path)
    numbered.sort(key=lambda entry: (entry[0], entry[1]))
    unnumbered.sort(key=lambda path: path.name)

    used_indexes: set[int] = set()
    ordered: list[tuple[int, Path]] = []
    for index, _, path in numbered:
        if index in used_indexes:
            result.warnings.append(f"duplicate {kind} index {index}: {path.name} skipped")
            continue
        used_indexes.add(index)
        ordered.append((index, path))
    next_index = max(used_indexes, default=0) + 1
    for offset, path in enumerate(unnumbered):
        ordered.append((next_index + offset, path))

    documents: list[OutputDocumentWrite] = []
    for index, path in ordered:
        try:
            content = path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Could not read %s: %s", path, error)
            result.warnings.append(f"unreadable document {directory.name}/{path.name}")
            continue
        documents.append(
            OutputDocumentWrite(
                kind=kind,
                index=index,
                title=_extract_title(content, path),
                content=content,
                slug=f"{directory.name}/{path.name}",
            ),
        )
    return documents


def _extract_title(content: str, path: Path) -> str:
    heading = _HEADING_RE.search(content)
    if heading is not None:
        return heading.group(1).strip()
    match = _NUMERIC_PREFIX_RE.match(path.stem)
    stem = match.group(2) if match is not None and match.group(2) else path.stem
    return stem.replace("_", " ").replace("-", " ").strip() or path.stem
