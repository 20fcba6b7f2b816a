"""
Root conftest.py: adds the repo root to sys.path so that `pipeline.*`
imports resolve without an editable install.
Points the operations log at a throwaway file before any pipeline module is imported.
"""
import os
import sys
import tempfile
from pathlib import Path

REPO_ROOT = Path(__file__).parent

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("OPS_LOG_PATH", str(Path(tempfile.gettempdir()) / "newsroom-test-log.md"))
os.environ.setdefault("KB_DB_PATH", str(Path(tempfile.gettempdir()) / "newsroom-test.sqlite"))
