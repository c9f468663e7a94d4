import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "diploidify", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "Diploidify" in cp.stdout or "diploidify" in cp.stdout.lower()


def test_cli_version() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "diploidify", "--version"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert cp.stdout.startswith("diploidify ")
