"""Token substitution for deployment action parameters."""

import os
from pathlib import Path
from typing import Dict, List

from ..models import RepositoryEntry

REPO_FOLDER_TOKEN = "${REPO_FOLDER}"
WIN_FOLDER_TOKEN = "${WIN_FOLDER}"


def get_system_directory() -> str:
    """Host system directory: %SystemRoot%\\System32 on Windows, /usr/bin elsewhere."""
    if os.name == "nt":
        system_root = os.environ.get("SystemRoot", r"C:\Windows")
        return str(Path(system_root) / "System32")
    return "/usr/bin"


def build_replacements_table(repository: RepositoryEntry) -> Dict[str, str]:
    return {
        REPO_FOLDER_TOKEN: repository.location_path,
        WIN_FOLDER_TOKEN: get_system_directory(),
    }


def replace_tokens(parameters: List[str], replacements: Dict[str, str]) -> List[str]:
    """Return a copy of parameters with every token replaced literally."""
    result = []
    for parameter in parameters:
        for token, value in replacements.items():
            parameter = parameter.replace(token, value)
        result.append(parameter)
    return result
