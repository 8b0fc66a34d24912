"""
Pytest configuration.

Why this exists:

The project uses a ``src/`` layout (package code lives in ``src/common`` and
``src/labeling``). Normally, developers run tests after installing the
package (e.g. ``pip install -e .``).

On some macOS/Python 3.13 setups, editable installs in dot-prefixed virtualenv
folders (like ``.venv``) can result in the generated ``.pth`` file being marked
as hidden, and Python's ``site`` module will skip hidden ``.pth`` files. When
that happens, ``import labeling`` fails even though the source tree is
present.

This file makes tests robust in that scenario by adding ``src/`` to ``sys.path``
only when the package cannot be imported normally. It also provides the
fixtures shared by most test modules.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    try:
        import labeling  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


_ensure_src_on_path()


@pytest.fixture
def settings(mocker, tmp_path):
    """Settings with storage under ``tmp_path`` and a fast retry policy."""
    from common.config import Settings

    mocker.patch.dict(
        os.environ,
        {
            "OPENAI_API_KEY": "test_api_key",
            "AI_MODELS": "synth-primary,synth-fallback",
            "LABELS_PATH": str(tmp_path / "schemata.json"),
            "RESULTS_PATH": str(tmp_path / "results.json"),
            "MAX_RETRIES": "1",
        },
        clear=True,
    )
    return Settings()


@pytest.fixture
def fatura_definition():
    from labeling.models import LabelDefinition

    return LabelDefinition(
        label="fatura",
        keywords=("fatura", "valor"),
        extraction_schema={"total": "Valor total da fatura"},
        extract_rules={
            "total": r'to_number(re.search(r"valor[^0-9]*([0-9][0-9.,]*)", text, re.I).group(1))'
        },
    )
