import json
import os
from pathlib import Path
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["OUTPUT_DIR"] = str(tmp_path / "outputs")
    env["MAX_LOGIN_RETRIES"] = "1"
    env["RETRY_BACKOFF_SECONDS"] = "0"
    return env


def _cli(args: list[str], env: dict[str, str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "credcheck.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def _write_input(path: Path, rows: list[dict[str, object]]) -> None:
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row))
            outfile.write("\n")


def test_cli_load_then_run_incomplete_records(tmp_path: Path) -> None:
    input_file = tmp_path / "companies.jsonl"
    _write_input(
        input_file,
        [
            {"organization_name": "Alpha Traders Ltd", "identifier": "P051111111A", "secret": ""},
            {"organization_name": "Beta Holdings Ltd", "identifier": None, "secret": None},
        ],
    )
    env = _base_env(tmp_path)

    loaded = _cli(["load", "--input", str(input_file)], env)
    assert loaded.returncode == 0
    assert "loaded=2" in loaded.stdout

    # Neither record is complete, so no browser is ever launched.
    ran = _cli(["run"], env)
    assert ran.returncode == 0
    assert "status=completed" in ran.stdout
    assert "processed=2" in ran.stdout
    assert "Password Missing: 1" in ran.stdout
    assert "Pin and Password Missing: 1" in ran.stdout
    assert list((tmp_path / "outputs").glob("PASSWORD VALIDATION - KRA - *.xlsx"))


def test_cli_load_missing_file_fails(tmp_path: Path) -> None:
    proc = _cli(["load", "--input", str(tmp_path / "absent.jsonl")], _base_env(tmp_path))

    assert proc.returncode != 0
    assert "input file not found" in proc.stderr


def test_cli_rejects_malformed_ids(tmp_path: Path) -> None:
    proc = _cli(["run", "--ids", "1,two"], _base_env(tmp_path))

    assert proc.returncode == 2
    assert "comma separated integers" in proc.stderr
