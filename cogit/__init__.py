"""
COGIT — Cognition Git.

A content-addressed version-control engine that keeps a per-commit index of
diff embeddings so the history of a code base can be searched and questioned
in natural language.
"""

from pathlib import Path
import tomllib
from importlib.metadata import version, PackageNotFoundError

def _resolve_version() -> str:
    """Resolve the COGIT version.

    Priority:
    1) Local source checkout version from pyproject.toml (if present)
    2) Installed package metadata (cogit)
    3) Safe fallback
    """
    try:
        root = Path(__file__).resolve().parent.parent
        pyproject = root / "pyproject.toml"
        if pyproject.exists():
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            proj = data.get("project", {})
            ver = proj.get("version")
            if isinstance(ver, str) and ver.strip():
                return ver.strip()
    except (OSError, tomllib.TOMLDecodeError):
        pass

    try:
        return version("cogit")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()
