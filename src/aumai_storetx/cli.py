"""CLI entry point for aumai-storetx."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from aumai_storetx import __version__
from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryObjectAdapter,
    InMemoryTransactionalDocumentAdapter,
)
from aumai_storetx.booking import BookingWorkflow
from aumai_storetx.config import CoordinatorConfig, StrategyMode
from aumai_storetx.core import TransactionCoordinator
from aumai_storetx.errors import ConfigurationError, ConflictError
from aumai_storetx.models import OperationResponse
from aumai_storetx.signup import SignupWorkflow

# Persistent store path for CLI use
_DEFAULT_STATE_DIR = Path.home() / ".aumai" / "storetx"
_DEFAULT_STATE_FILE = _DEFAULT_STATE_DIR / "state.json"

_BACKENDS = ("memory", "memory-native")


@dataclass
class _Session:
    state_file: Path
    backend: str
    mode: str | None
    documents: InMemoryDocumentAdapter = field(init=False)
    objects: InMemoryObjectAdapter = field(init=False)

    def __post_init__(self) -> None:
        self.documents = (
            InMemoryTransactionalDocumentAdapter()
            if self.backend == "memory-native"
            else InMemoryDocumentAdapter()
        )
        self.objects = InMemoryObjectAdapter()

    def load(self) -> None:
        """Restore persisted document and object state, if present."""
        if self.state_file.exists():
            raw: dict[str, Any] = json.loads(self.state_file.read_text(encoding="utf-8"))
            self.documents.restore(raw.get("documents", {}))
            self.objects.restore(raw.get("objects", {}))

    def save(self) -> None:
        """Persist document and object state to disk."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        data = {"documents": self.documents.snapshot(), "objects": self.objects.snapshot()}
        self.state_file.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def coordinator(self) -> TransactionCoordinator:
        try:
            config = CoordinatorConfig.from_env()
        except ConfigurationError as exc:
            raise click.ClickException(str(exc)) from exc
        if self.mode is not None:
            config = config.model_copy(update={"mode": StrategyMode(self.mode)})
        return TransactionCoordinator(self.documents, self.objects, config)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    return payload


def _respond(ctx: click.Context, response: OperationResponse) -> None:
    click.echo(json.dumps(response.to_dict(), indent=2))
    if not response.success:
        ctx.exit(1)


_input_file = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=_DEFAULT_STATE_FILE,
    show_default=True,
    help="JSON file holding the in-memory stores between invocations.",
)
@click.option(
    "--backend",
    type=click.Choice(_BACKENDS),
    default="memory-native",
    show_default=True,
    help="Document store backend.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in StrategyMode]),
    default=None,
    help="Execution strategy; overrides STORETX_MODE.",
)
@click.option("--verbose", is_flag=True, help="Log coordinator activity to stderr.")
@click.pass_context
def main(
    ctx: click.Context, state_file: Path, backend: str, mode: str | None, verbose: bool
) -> None:
    """AumAI StoreTx: atomic writes across object storage and a document store."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    ctx.obj = _Session(state_file=state_file, backend=backend, mode=mode)


@main.command("probe")
@click.pass_context
def probe_cmd(ctx: click.Context) -> None:
    """Report which execution mode the selected backend resolves to."""
    session: _Session = ctx.obj
    coordinator = session.coordinator()
    click.echo(
        json.dumps(
            {
                "backend": session.backend,
                "requested": coordinator.config.mode.value,
                "resolved": coordinator.mode.value if coordinator.mode else None,
                "reason": coordinator.unavailable_reason,
            },
            indent=2,
        )
    )
    if coordinator.mode is None:
        ctx.exit(1)


@main.command("signup")
@click.option("--request", "request_file", required=True, type=_input_file, help="Signup JSON.")
@click.option("--avatar", "avatar_file", type=_input_file, help="Avatar image to upload.")
@click.option("--qr", "qr_file", type=_input_file, help="QR code image to upload.")
@click.pass_context
def signup_cmd(
    ctx: click.Context, request_file: Path, avatar_file: Path | None, qr_file: Path | None
) -> None:
    """Create a user with its avatar and QR code, atomically."""
    session: _Session = ctx.obj
    payload = _read_json(request_file)
    if avatar_file is not None:
        payload["avatar"] = avatar_file.read_bytes()
    if qr_file is not None:
        payload["qrCode"] = qr_file.read_bytes()

    session.load()
    coordinator = session.coordinator()
    response = SignupWorkflow(coordinator).run(payload)
    session.save()
    _respond(ctx, response)


@main.command("book")
@click.option("--request", "request_file", required=True, type=_input_file, help="Booking JSON.")
@click.option("--qr", "qr_file", type=_input_file, help="QR code image to upload.")
@click.pass_context
def book_cmd(ctx: click.Context, request_file: Path, qr_file: Path | None) -> None:
    """Book tickets: ticket, payment record, order and inventory decrement."""
    session: _Session = ctx.obj
    payload = _read_json(request_file)
    if qr_file is not None:
        payload["qrCode"] = qr_file.read_bytes()

    session.load()
    coordinator = session.coordinator()
    response = BookingWorkflow(coordinator).run(payload)
    session.save()
    _respond(ctx, response)


@main.command("seed")
@click.argument("collection")
@click.argument("document_id")
@click.option("--data", "data_file", required=True, type=_input_file, help="Document JSON.")
@click.pass_context
def seed_cmd(ctx: click.Context, collection: str, document_id: str, data_file: Path) -> None:
    """Create a document directly, outside any transaction (e.g. an event)."""
    session: _Session = ctx.obj
    session.load()
    try:
        document = session.documents.create(collection, document_id, _read_json(data_file))
    except ConflictError as exc:
        raise click.ClickException(str(exc)) from exc
    session.save()
    click.echo(json.dumps(document.model_dump(mode="json"), indent=2))


@main.command("show")
@click.argument("collection")
@click.argument("document_id")
@click.pass_context
def show_cmd(ctx: click.Context, collection: str, document_id: str) -> None:
    """Display a stored document."""
    session: _Session = ctx.obj
    session.load()
    document = session.documents.get(collection, document_id)
    if document is None:
        raise click.ClickException(f"Document not found: {collection}/{document_id}")
    click.echo(json.dumps(document.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    main()
