"""Layout helpers for the Claude log tree.

<root>/history.jsonl                              append-only history log
<root>/projects/<encoded project>/<id>.jsonl     one log per session
"""
from __future__ import annotations

import re
from pathlib import Path

HISTORY_FILENAME = "history.jsonl"
PROJECTS_DIRNAME = "projects"
SESSION_SUFFIX = ".jsonl"

_PROJECT_PATH_SEPARATORS = re.compile(r"[/.]")


def encode_project_path(project: str) -> str:
    """Map a project path to its directory name under ``projects/``.

    The mapping is lossy (``/a.b`` and ``/a/b`` collide) and is never decoded;
    history entries always carry the original project string.
    """
    return _PROJECT_PATH_SEPARATORS.sub("-", project)


def project_name(project: str) -> str:
    parts = [part for part in project.split("/") if part]
    return parts[-1] if parts else project


def is_session_file(name: str) -> bool:
    return name.endswith(SESSION_SUFFIX)


def session_id_from_path(path: str | Path) -> str:
    name = Path(path).name
    if name.endswith(SESSION_SUFFIX):
        return name[: -len(SESSION_SUFFIX)]
    return name


def is_history_path(path: str | Path) -> bool:
    return str(path).endswith(HISTORY_FILENAME)
