"""Deterministic stand-in Analyzer for local smoke runs and integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

import yaml

from course_queue.collector import (
    ABSTRACTIONS_FILE,
    CHAPTER_ORDER_FILE,
    OUTPUT_DIR_NAME,
    RELATIONSHIPS_FILE,
)
from course_queue.progress import DEFAULT_STAGE_TABLE


def main(argv: list[str] | None = None) -> int:
    """Emit progress for every stage and write a small course into the output dir."""

    parser = argparse.ArgumentParser(prog="course-analyzer-demo")
    parser.add_argument("command", choices=["analyze"])
    parser.add_argument("path")
    parser.add_argument("--profile", default="dev")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--chapters", type=int, default=3)
    parser.add_argument("--tutorials", type=int, default=0)
    parser.add_argument("--reviewed", action="store_true")
    parser.add_argument("--step-delay", type=float, default=0.0)
    parser.add_argument("--hang-at-step", type=int, default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--error-message", default="analysis failed")
    parser.add_argument("--no-output", action="store_true")
    parser.add_argument("--language", choices=["en", "fr"], default="en")
    args = parser.parse_args(argv)

    subject = Path(args.path)
    if not subject.is_dir():
        print(f"subject directory not found: {subject}", file=sys.stderr, flush=True)
        return 2

    output_dir = subject / OUTPUT_DIR_NAME
    files = sorted(path.name for path in subject.iterdir() if path.name != OUTPUT_DIR_NAME)
    print(json.dumps({"level": "info", "msg": "Starting codebase analysis"}), flush=True)
    if args.verbose:
        print(f"profile={args.profile} files={len(files)}", flush=True)

    total = DEFAULT_STAGE_TABLE.total_steps
    for stage in DEFAULT_STAGE_TABLE.stages:
        if args.hang_at_step is not None and stage.step == args.hang_at_step:
            print(f"Step {stage.step}/{total}: {stage.label('en')} (waiting)", flush=True)
            while True:
                time.sleep(0.5)
        if args.exit_code and stage.step == total:
            print(args.error_message, file=sys.stderr, flush=True)
            return args.exit_code
        if args.language == "fr":
            print(f"Étape {stage.step}/{total}: {stage.label('fr')}", flush=True)
        else:
            print(f"Step {stage.step} of {total}: {stage.label('en')}", flush=True)
        if not args.no_output:
            _write_stage_output(
                stage.key,
                output_dir=output_dir,
                files=files,
                chapters=args.chapters,
                tutorials=args.tutorials,
                reviewed=args.reviewed,
            )
        if args.step_delay:
            time.sleep(args.step_delay)

    print(json.dumps({"level": "info", "msg": "Analysis complete"}), flush=True)
    return 0


def _write_stage_output(  # noqa: PLR0913
    stage_key: str,
    *,
    output_dir: Path,
    files: list[str],
    chapters: int,
    tutorials: int,
    reviewed: bool,
) -> None:
    names = [f"Concept {number}" for number in range(1, chapters + 1)]
    if stage_key == "extract":
        _write_yaml(
            output_dir / ABSTRACTIONS_FILE,
            [
                {"name": name, "description": f"Demo abstraction {name}", "file_paths": files[:2]}
                for name in names
            ],
        )
    elif stage_key == "relate":
        _write_yaml(
            output_dir / RELATIONSHIPS_FILE,
            {
                "summary": "Demo relationships",
                "relationships": [
                    {
                        "from_abstraction": index,
                        "to_abstraction": index + 1,
                        "label": "uses",
                        "evidence": "demo",
                    }
                    for index in range(max(chapters - 1, 0))
                ],
            },
        )
    elif stage_key == "order":
        _write_yaml(
            output_dir / CHAPTER_ORDER_FILE,
            {
                "order": [
                    {"index": index, "name": name, "reasoning": "demo order"}
                    for index, name in enumerate(names, 1)
                ],
            },
        )
    elif stage_key == "generate":
        _write_markdown(output_dir / "chapters", names, heading="Chapter")
    elif stage_key == "review" and reviewed:
        _write_markdown(output_dir / "reviewed-chapters", names, heading="Reviewed chapter")
    elif stage_key == "tutorialize" and tutorials:
        tutorial_names = [f"Tutorial {number}" for number in range(1, tutorials + 1)]
        _write_markdown(output_dir / "tutorials", tutorial_names, heading="Tutorial")


def _write_yaml(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), "utf-8")


def _write_markdown(directory: Path, names: list[str], *, heading: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for index, name in enumerate(names, 1):
        slug = name.lower().replace(" ", "_")
        (directory / f"{index:02d}_{slug}.md").write_text(
            f"# {heading} {index}: {name}\n\nGenerated by the demo analyzer.\n",
            "utf-8",
        )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
