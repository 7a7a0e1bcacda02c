import asyncio

from typer.testing import CliRunner

import dossierflow.persistence as persistence
from dossierflow.cli import app
from dossierflow.persistence import InMemoryStepInstanceStore


def _setup_repo() -> InMemoryStepInstanceStore:
    repo = InMemoryStepInstanceStore()
    persistence._repository_instance = repo
    return repo


def test_catalog_import_and_show(fixtures_dir):
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["catalog", "import", str(fixtures_dir / "catalog.yaml")])
    assert result.exit_code == 0, result.stdout
    assert "Imported 4 steps for product llc-formation" in result.stdout
    assert asyncio.run(repo.get_step_catalog("llc-formation")) is not None

    result = runner.invoke(app, ["catalog", "show", "llc-formation"])
    assert result.exit_code == 0, result.stdout
    assert "identity" in result.stdout
    assert "2880 min" in result.stdout

    missing = runner.invoke(app, ["catalog", "show", "nope"])
    assert missing.exit_code == 1
    assert "Catalog not found" in missing.stdout


def test_catalog_import_reports_invalid_file(tmp_path):
    _setup_repo()
    path = tmp_path / "bad.yaml"
    path.write_text(
        "product_id: bad\nsteps:\n  - {id: t, code: t, position: 1, type: TIMER, timer_delay_minutes: 5}\n"
    )
    result = CliRunner().invoke(app, ["catalog", "import", str(path)])
    assert result.exit_code == 1
    assert "Could not load catalog" in result.stdout


def test_dossier_create_view_and_events(fixtures_dir):
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["catalog", "import", str(fixtures_dir / "catalog.yaml")])

    result = runner.invoke(app, ["dossier", "create", "llc-formation", "--dossier-id", "d-42"])
    assert result.exit_code == 0, result.stdout
    assert result.stdout.strip() == "d-42"

    result = runner.invoke(app, ["dossier", "view", "d-42"])
    assert result.exit_code == 0, result.stdout
    assert "Step 1/4: identity (CLIENT)" in result.stdout
    assert "Status: DRAFT" in result.stdout
    assert "Documents not_submitted: passport" in result.stdout
    assert "Actions: edit, submit" in result.stdout
    assert len(asyncio.run(repo.list_step_instances("d-42"))) == 1

    result = runner.invoke(app, ["dossier", "events", "d-42"])
    assert result.exit_code == 0
    assert "No events found" in result.stdout


def test_dossier_commands_fail_for_unknown_ids():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["dossier", "view", "missing"])
    assert result.exit_code == 1
    assert "Dossier missing not found" in result.stdout

    result = runner.invoke(app, ["dossier", "create", "no-such-product"])
    assert result.exit_code == 1
    assert "No step catalog" in result.stdout
