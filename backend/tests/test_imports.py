"""
CallSync - Package Import Tests

Each package must import on its own, in any order, in a clean interpreter.

Run with: pytest tests/test_imports.py -v
"""

import os
import subprocess
import sys

import pytest


BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def import_in_fresh_interpreter(*modules: str) -> subprocess.CompletedProcess:
    statements = "; ".join(f"import {module}" for module in modules)
    return subprocess.run(
        [sys.executable, "-c", statements],
        cwd=BACKEND_DIR,
        capture_output=True,
        text=True,
        timeout=60,
    )


class TestPackageImports:

    @pytest.mark.parametrize("modules", [
        ("app.services",),
        ("app.services.analysis",),
        ("app.services.call_service",),
        ("app.telephony",),
        ("app.telephony.gateway",),
        ("app.tracker",),
        ("app.services", "app.telephony.gateway"),
        ("app.telephony.gateway", "app.services"),
        ("main",),
    ])
    def test_imports_cleanly(self, modules):
        result = import_in_fresh_interpreter(*modules)
        assert result.returncode == 0, result.stderr
