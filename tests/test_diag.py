from __future__ import annotations

import importlib.util
import io
import json
import sys
from pathlib import Path

import pytest

from conveyor.notify import build_envelope

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "conveyor_diag.py"


def _load_diag():
    spec = importlib.util.spec_from_file_location("conveyor_diag", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


def test_sign_prints_verifiable_envelope(tmp_path: Path, capsys) -> None:
    diag = _load_diag()
    payload = tmp_path / "payload.json"
    payload.write_text(json.dumps({"projectId": "p1", "status": "running"}), encoding="utf-8")

    diag.main(["sign", str(payload), "--secret", "s3cr3t"])

    envelope = json.loads(capsys.readouterr().out)
    assert envelope == build_envelope({"projectId": "p1", "status": "running"}, "s3cr3t")


def test_verify_signature_reads_secret_from_env(tmp_path: Path, monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cr3t")
    envelope = tmp_path / "envelope.json"
    envelope.write_text(
        json.dumps(build_envelope({"projectId": "p1", "status": "completed"}, "s3cr3t")),
        encoding="utf-8",
    )

    diag.main(["verify-signature", str(envelope)])

    assert capsys.readouterr().out.strip() == "signature valid"


def test_verify_signature_rejects_tampering(monkeypatch, capsys) -> None:
    diag = _load_diag()
    tampered = build_envelope({"projectId": "p1", "status": "completed"}, "s3cr3t")
    tampered["status"] = "error"
    monkeypatch.setattr(sys, "stdin", io.StringIO(json.dumps(tampered)))

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["verify-signature", "--secret", "s3cr3t"])

    assert excinfo.value.code == 1
    assert "signature INVALID" in capsys.readouterr().out


def test_sign_requires_secret(monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.delenv("WEBHOOK_SECRET", raising=False)

    with pytest.raises(SystemExit):
        diag.main(["sign", "-"])

    assert "signing secret is required" in capsys.readouterr().err


def test_sdk_check_reports_missing_package(monkeypatch, capsys) -> None:
    diag = _load_diag()

    monkeypatch.setitem(sys.modules, "claude_agent_sdk", None)

    with pytest.raises(SystemExit):
        diag.main(["sdk"])

    assert "Agent SDK unavailable" in capsys.readouterr().err


def test_sdk_check_reports_query_function(capsys) -> None:
    diag = _load_diag()

    diag.main(["sdk"])

    out = capsys.readouterr().out
    assert "Agent SDK imported successfully" in out
    assert "query function available: True" in out
