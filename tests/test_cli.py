"""Comprehensive CLI tests for aumai-storetx."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryTransactionalDocumentAdapter,
)
from aumai_storetx.cli import _Session, main


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "state.json"


def _write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _invoke(runner: CliRunner, state_file: Path, *args: str, backend: str = "memory-native"):
    return runner.invoke(main, ["--state-file", str(state_file), "--backend", backend, *args])


def _seed_event(runner: CliRunner, state_file: Path, tmp_path: Path, **kwargs: Any) -> None:
    event = _write_json(
        tmp_path / "event.json",
        {"name": "Launch Night", "ticketsLeft": "2", "categories": ["VIP:Rs.999:2:Phase 1"]},
    )
    result = _invoke(runner, state_file, "seed", "events", "E1", "--data", str(event), **kwargs)
    assert result.exit_code == 0, result.output


def _booking(tmp_path: Path, payment_id: str = "P1", quantity: int = 1) -> Path:
    return _write_json(
        tmp_path / f"booking-{payment_id}.json",
        {
            "userId": "U1",
            "eventId": "E1",
            "paymentId": payment_id,
            "quantity": quantity,
            "ticketTypeName": "VIP",
            "totalAmountPaid": 999,
        },
    )


# ===========================================================================
# --version
# ===========================================================================


class TestVersion:
    def test_version_exits_zero(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0

    def test_version_shows_version_string(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert "0.1.0" in result.output


# ===========================================================================
# --help
# ===========================================================================


class TestHelp:
    def test_main_help_exits_zero(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0

    @pytest.mark.parametrize("subcommand", ["probe", "signup", "book", "seed", "show"])
    def test_subcommands_in_help(self, runner: CliRunner, subcommand: str) -> None:
        result = runner.invoke(main, ["--help"])
        assert subcommand in result.output

    def test_book_help_exits_zero(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["book", "--help"])
        assert result.exit_code == 0


# ===========================================================================
# probe command
# ===========================================================================


class TestProbeCommand:
    def test_native_backend_resolves_native(
        self, runner: CliRunner, state_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("STORETX_MODE", raising=False)
        result = _invoke(runner, state_file, "probe")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["resolved"] == "native"
        assert data["reason"] is None

    def test_plain_backend_resolves_fallback(
        self, runner: CliRunner, state_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("STORETX_MODE", raising=False)
        result = _invoke(runner, state_file, "probe", backend="memory")
        assert json.loads(result.output)["resolved"] == "fallback"

    def test_native_required_on_plain_backend_fails(
        self, runner: CliRunner, state_file: Path
    ) -> None:
        result = runner.invoke(
            main,
            ["--state-file", str(state_file), "--backend", "memory", "--mode", "native", "probe"],
        )
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["resolved"] is None
        assert data["reason"]

    def test_invalid_environment_is_reported(
        self, runner: CliRunner, state_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("STORETX_DEFAULT_TTL_SECONDS", "not-a-number")
        result = _invoke(runner, state_file, "probe")
        assert result.exit_code != 0
        assert "Error" in result.output


# ===========================================================================
# seed / show commands
# ===========================================================================


class TestSeedAndShow:
    def test_seed_then_show(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        _seed_event(runner, state_file, tmp_path)
        result = _invoke(runner, state_file, "show", "events", "E1")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["data"]["ticketsLeft"] == "2"
        assert data["revision"] == 1

    def test_seed_existing_fails(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        _seed_event(runner, state_file, tmp_path)
        event = _write_json(tmp_path / "again.json", {})
        result = _invoke(runner, state_file, "seed", "events", "E1", "--data", str(event))
        assert result.exit_code != 0

    def test_show_missing(self, runner: CliRunner, state_file: Path) -> None:
        result = _invoke(runner, state_file, "show", "events", "nope")
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_seed_rejects_non_object_json(
        self, runner: CliRunner, state_file: Path, tmp_path: Path
    ) -> None:
        data = tmp_path / "list.json"
        data.write_text("[1, 2]", encoding="utf-8")
        result = _invoke(runner, state_file, "seed", "events", "E1", "--data", str(data))
        assert result.exit_code != 0

    def test_plain_backend_seed_then_show(
        self, runner: CliRunner, state_file: Path, tmp_path: Path
    ) -> None:
        _seed_event(runner, state_file, tmp_path, backend="memory")
        result = _invoke(runner, state_file, "show", "events", "E1", backend="memory")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["id"] == "E1"

    @pytest.mark.parametrize(
        ("backend", "adapter"),
        [
            ("memory", InMemoryDocumentAdapter),
            ("memory-native", InMemoryTransactionalDocumentAdapter),
        ],
    )
    def test_session_builds_adapters_up_front(
        self, state_file: Path, backend: str, adapter: type
    ) -> None:
        session = _Session(state_file=state_file, backend=backend, mode=None)
        assert type(session.documents) is adapter
        assert session.objects is not None
        session.save()
        saved = json.loads(state_file.read_text(encoding="utf-8"))
        assert saved == {"documents": {"collections": {}}, "objects": {"objects": []}}


# ===========================================================================
# signup command
# ===========================================================================


class TestSignupCommand:
    def _request(self, tmp_path: Path, user_id: str = "U1") -> Path:
        return _write_json(
            tmp_path / f"signup-{user_id}.json",
            {"userId": user_id, "name": "Ana", "email": "ana@example.com"},
        )

    def test_signup_with_avatar(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        avatar = tmp_path / "avatar.png"
        avatar.write_bytes(b"\x89PNG avatar")
        result = _invoke(
            runner,
            state_file,
            "signup",
            "--request",
            str(self._request(tmp_path)),
            "--avatar",
            str(avatar),
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["success"] is True
        assert data["data"]["userId"] == "U1"
        assert data["data"]["avatarFileId"]
        assert data["data"]["mode"] == "native"

    def test_user_is_persisted(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        _invoke(runner, state_file, "signup", "--request", str(self._request(tmp_path)))
        result = _invoke(runner, state_file, "show", "users", "U1")
        assert result.exit_code == 0
        assert json.loads(result.output)["data"]["email"] == "ana@example.com"

    def test_duplicate_email_exits_one(
        self, runner: CliRunner, state_file: Path, tmp_path: Path
    ) -> None:
        _invoke(runner, state_file, "signup", "--request", str(self._request(tmp_path)))
        result = _invoke(
            runner, state_file, "signup", "--request", str(self._request(tmp_path, "U2"))
        )
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["code"] == "DUPLICATE_EMAIL"
        assert data["details"]["existingId"] == "U1"

    def test_missing_fields_exit_one(
        self, runner: CliRunner, state_file: Path, tmp_path: Path
    ) -> None:
        request = _write_json(tmp_path / "bad.json", {"name": "Ana"})
        result = _invoke(runner, state_file, "signup", "--request", str(request))
        assert result.exit_code == 1
        assert json.loads(result.output)["code"] == "VALIDATION_ERROR"


# ===========================================================================
# book command
# ===========================================================================


class TestBookCommand:
    @pytest.mark.parametrize("backend", ["memory", "memory-native"])
    def test_book_decrements_inventory(
        self, runner: CliRunner, state_file: Path, tmp_path: Path, backend: str
    ) -> None:
        _seed_event(runner, state_file, tmp_path, backend=backend)
        result = _invoke(
            runner, state_file, "book", "--request", str(_booking(tmp_path)), backend=backend
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["ticketId"]
        assert data["qrCodeIncluded"] is False

        shown = json.loads(_invoke(runner, state_file, "show", "events", "E1").output)
        assert shown["data"]["ticketsLeft"] == "1"
        assert shown["data"]["categories"] == ["VIP:Rs.999:1:Phase 1"]

    def test_book_with_qr(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        _seed_event(runner, state_file, tmp_path)
        qr = tmp_path / "qr.png"
        qr.write_bytes(b"qr")
        result = _invoke(
            runner, state_file, "book", "--request", str(_booking(tmp_path)), "--qr", str(qr)
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"]["qrCodeIncluded"] is True

    def test_repeated_payment_is_rejected(
        self, runner: CliRunner, state_file: Path, tmp_path: Path
    ) -> None:
        _seed_event(runner, state_file, tmp_path)
        first = json.loads(
            _invoke(runner, state_file, "book", "--request", str(_booking(tmp_path))).output
        )
        result = _invoke(runner, state_file, "book", "--request", str(_booking(tmp_path)))
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["code"] == "DUPLICATE_PAYMENT"
        assert data["details"]["existingTicketId"] == first["data"]["ticketId"]

    def test_sold_out(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        _seed_event(runner, state_file, tmp_path)
        result = _invoke(
            runner, state_file, "book", "--request", str(_booking(tmp_path, quantity=3))
        )
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["code"] == "INSUFFICIENT_TICKETS"
        assert data["details"]["available"] == 2

    def test_unknown_event(self, runner: CliRunner, state_file: Path, tmp_path: Path) -> None:
        result = _invoke(runner, state_file, "book", "--request", str(_booking(tmp_path)))
        assert result.exit_code == 1
        assert json.loads(result.output)["code"] == "NOT_FOUND_ERROR"
