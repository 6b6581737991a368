"""Project metadata loading.

This module provides helpers for loading project metadata from YAML/JSON
files and validating it against the project schema.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from depcache.errors import DepcacheError
from depcache.recipes.schema import ProjectSchema


class ProjectLoadError(DepcacheError):
    """Raised when project metadata cannot be loaded or validated."""

    def __init__(self, message: str, code: str = "project_load_error") -> None:
        super().__init__(message, code)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_project_data(data: dict[str, Any]) -> ProjectSchema:
    """Parse and validate project data using the schema.

    Args:
        data: Dictionary containing project metadata.

    Returns:
        Validated ProjectSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return ProjectSchema.model_validate(data)


def load_project(path: Path) -> ProjectSchema:
    """Load and validate project metadata from a YAML or JSON file.

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON). Relative runtime requirement sources are resolved
    against the metadata file's directory.

    Args:
        path: Path to the metadata file.

    Returns:
        Validated ProjectSchema instance.

    Raises:
        ProjectLoadError: If the file is missing, malformed or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise ProjectLoadError(
                f"Unsupported project file extension: {suffix}",
                code="unsupported_format",
            )
        project = parse_project_data(data)
    except FileNotFoundError as e:
        raise ProjectLoadError(
            f"Project file not found: {path}", code="file_not_found"
        ) from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        # pydantic.ValidationError is a ValueError subclass
        code = "validation_error" if isinstance(e, ValidationError) else "parse_error"
        raise ProjectLoadError(f"Invalid project file {path}: {e}", code=code) from e

    base_dir = path.parent.resolve()
    for requirement in project.runtime:
        source = Path(requirement.source)
        if not source.is_absolute():
            requirement.source = str(base_dir / source)
    return project


__all__ = [
    "ProjectLoadError",
    "load_json",
    "load_project",
    "load_yaml",
    "parse_project_data",
]
