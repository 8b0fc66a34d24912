"""
Document Labeler Entrypoint
===========================

Command-line interface for the labeling pipeline. Configuration comes from
environment variables (see `common.config.Settings`); the commands only take
the documents to work on.

- ``labeler run FOLDER`` labels and extracts every document of a folder,
  learning new labels as needed.
- ``labeler classify FILE`` shows how one file would be classified and
  extracted with the current catalog, without calling the inference service
  or writing anything.
- ``labeler labels`` lists the catalog.
"""

from __future__ import annotations

import json
from pathlib import Path

import structlog
import typer

from common.config import Settings, setup_libraries
from common.logging_config import configure_logging
from common.storage import PersistenceError
from .classifier import UNKNOWN_LABEL, classify
from .pipeline import LabelingPipeline
from .registry import LabelRegistry
from .results import ResultStore
from .rules import RuleEngine
from .sources import iter_documents, read_document
from .synthesizer import SchemaSynthesizer

app = typer.Typer(
    name="labeler",
    help="Classify documents against a learned label catalog and extract fields.",
    add_completion=False,
    no_args_is_help=True,
)


def _load_settings() -> Settings:
    log = structlog.get_logger(__name__)
    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=str(e))
        raise typer.Exit(code=1)
    return settings


def _load_registry(settings: Settings) -> LabelRegistry:
    log = structlog.get_logger(__name__)
    registry = LabelRegistry(settings.LABELS_PATH)
    try:
        registry.load()
    except PersistenceError as e:
        log.error("Cannot load label catalog", path=e.path, error=e.reason)
        raise typer.Exit(code=1)
    return registry


@app.command()
def run(
    folder: Path = typer.Argument(
        ..., exists=True, file_okay=False, dir_okay=True, help="Folder of .pdf/.txt files."
    ),
) -> None:
    """Label every document in FOLDER and append the extracted fields."""
    settings = _load_settings()
    log = structlog.get_logger(__name__)
    registry = _load_registry(settings)

    log.info(
        "Starting labeler",
        folder=str(folder),
        labels_path=settings.LABELS_PATH,
        results_path=settings.RESULTS_PATH,
        label_count=len(registry),
        llm_provider=settings.LLM_PROVIDER,
        ai_models=settings.AI_MODELS,
    )

    pipeline = LabelingPipeline(
        registry=registry,
        synthesizer=SchemaSynthesizer(settings),
        engine=RuleEngine(max_rule_length=settings.RULE_MAX_LENGTH),
        store=ResultStore(settings.RESULTS_PATH),
        settings=settings,
    )
    try:
        summary = pipeline.run(iter_documents(folder))
    except PersistenceError as e:
        log.error("Run aborted", path=e.path, error=e.reason)
        raise typer.Exit(code=1)

    typer.echo(
        f"{summary.total} documents: {summary.matched} matched, "
        f"{summary.synthesized} new labels, {summary.unresolved} unresolved, "
        f"{summary.failed} failed"
    )


@app.command("classify")
def classify_file(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="A .pdf or .txt file."),
) -> None:
    """Classify FILE with the current catalog and print the extracted fields."""
    settings = _load_settings()
    registry = _load_registry(settings)

    try:
        document = read_document(file)
    except (OSError, RuntimeError, ValueError) as e:
        typer.echo(f"Cannot read {file}: {e}", err=True)
        raise typer.Exit(code=1)

    snapshot = registry.snapshot()
    label = classify(document.content, snapshot)
    output = {"document_id": document.id, "label": label, "fields": None}
    if label != UNKNOWN_LABEL:
        engine = RuleEngine(max_rule_length=settings.RULE_MAX_LENGTH)
        output["fields"] = engine.extract(
            document.content, snapshot.get(label).extract_rules
        )
    typer.echo(json.dumps(output, indent=2, ensure_ascii=False))


@app.command("labels")
def list_labels() -> None:
    """List the labels of the catalog in matching order."""
    settings = _load_settings()
    registry = _load_registry(settings)
    for definition in registry.snapshot():
        fields = ", ".join(definition.extract_rules) or "-"
        typer.echo(
            f"{definition.label}: keywords={list(definition.keywords)} fields=[{fields}]"
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
