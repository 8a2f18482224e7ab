import json

from missions_backend import app as backend_app
from missions_backend.reconciler import SyncResult, SyncSummary
from scripts import sync_missions


def test_main_prints_summary_and_exit_code(monkeypatch, capsys):
    result = SyncResult(True, "Sync completed.", SyncSummary(files_scanned=1, inserted=1))
    monkeypatch.setattr(backend_app, "sync_missions_from_storage", lambda: (result, 200))

    assert sync_missions.main() == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["summary"]["inserted"] == 1
    assert printed["message"] == "Sync completed."


def test_main_fails_when_sync_fails(monkeypatch, capsys):
    result = SyncResult(False, "Storage bucket 'missions-json' not found.")
    monkeypatch.setattr(backend_app, "sync_missions_from_storage", lambda: (result, 404))

    assert sync_missions.main() == 1
    assert "not found" in capsys.readouterr().out
