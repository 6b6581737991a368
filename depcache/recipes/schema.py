"""Pydantic models for project metadata validation.

This module defines the Pydantic models for validating project metadata
loaded from YAML/JSON files: declared dependencies, lock data, runtime
requirements and toolchain command templates.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

DEFAULT_INSTALL_DIR = "/usr/local/bin"


def _numeric_version_message(value: object) -> str:
    return (
        f"version {value!r} was parsed as a number; quote it as a string "
        f"(e.g. \"1.10\") so no digits are lost"
    )


class LockEntrySchema(BaseModel):
    """Schema for a resolved lock entry.

    Attributes:
        name: Dependency name.
        version: Exact resolved version.
        source: Optional registry or repository identifier.
        checksum: Optional content checksum.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    version: Annotated[str, Field(min_length=1, max_length=100)]
    source: str | None = Field(default=None, description="Registry or repository")
    checksum: str | None = Field(default=None, description="Content checksum")

    @field_validator("version", mode="before")
    @classmethod
    def reject_numeric_version(cls, v: object) -> object:
        """Reject unquoted YAML numbers, which lose digits such as 1.10."""
        if isinstance(v, (int, float)):
            raise ValueError(_numeric_version_message(v))
        return v


class RuntimeRequirementSchema(BaseModel):
    """Schema for a file required at run time.

    Attributes:
        source: Path on the build host.
        destination: Path inside the runtime closure (must start with /).
    """

    model_config = ConfigDict(extra="forbid")

    source: str = Field(description="Path to source file on host")
    destination: str = Field(description="Destination path (must start with /)")

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        """Validate destination is absolute and does not escape the root."""
        if not v.startswith("/"):
            raise ValueError("destination must start with '/'")
        if ".." in v.split("/"):
            raise ValueError("destination must not contain '..'")
        return v


class ToolchainSchema(BaseModel):
    """Schema for toolchain command templates.

    Commands are lists of arguments; placeholders ``{target}``,
    ``{profile}``, ``{recipe_path}``, ``{binary}`` and ``{bundle_dir}``
    are substituted before execution.

    Attributes:
        version_command: Command printing the toolchain version.
        dependencies_command: Command compiling dependencies from a recipe.
        project_command: Command compiling the project.
        bundle_paths: Paths (relative to the dependency work dir) captured
            as the compiled dependency bundle.
        binary_path: Path of the built binary relative to the project dir.
    """

    model_config = ConfigDict(extra="forbid")

    version_command: list[str] = Field(min_length=1)
    dependencies_command: list[str] = Field(min_length=1)
    project_command: list[str] = Field(min_length=1)
    bundle_paths: list[str] = Field(default_factory=lambda: ["target"], min_length=1)
    binary_path: str = Field(default="target/{target}/{profile}/{binary}")

    @field_validator("bundle_paths")
    @classmethod
    def validate_bundle_paths(cls, v: list[str]) -> list[str]:
        """Validate bundle paths are relative and stay inside the work dir."""
        for path in v:
            if path.startswith("/") or ".." in path.split("/"):
                raise ValueError(f"bundle path must be relative: {path}")
        return v


class ProjectSchema(BaseModel):
    """Complete project metadata schema.

    Attributes:
        name: Project name.
        binary: Name of the binary to build.
        target_platform: Target platform identifier (settings default if unset).
        build_profile: Build profile (settings default if unset).
        dependencies: Declared dependencies (name -> version constraint).
        lock: Resolved lock entries, including transitive dependencies.
        runtime: Files required at run time.
        install_dir: Directory the binary is installed into.
        extra_inputs: Additional inputs affecting dependency compilation.
        toolchain: Toolchain command templates.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    binary: str | None = Field(default=None, description="Binary name (default: name)")
    target_platform: str | None = Field(default=None)
    build_profile: str | None = Field(default=None)
    dependencies: dict[str, str] = Field(default_factory=dict)
    lock: list[LockEntrySchema] | None = Field(default=None)
    runtime: list[RuntimeRequirementSchema] = Field(default_factory=list)
    install_dir: str = Field(default=DEFAULT_INSTALL_DIR)
    extra_inputs: dict[str, str] = Field(default_factory=dict)
    toolchain: ToolchainSchema | None = Field(default=None)

    @field_validator("name", "binary")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        """Validate project and binary names."""
        if v is not None and not NAME_PATTERN.match(v):
            raise ValueError(
                f"must contain only letters, digits, '_', '.', '-': got '{v}'"
            )
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def reject_numeric_constraints(cls, v: object) -> object:
        """Reject unquoted YAML numbers as dependency constraints."""
        if isinstance(v, dict):
            for key, value in v.items():
                if isinstance(value, (int, float)):
                    raise ValueError(f"{key}: {_numeric_version_message(value)}")
        return v

    @field_validator("install_dir")
    @classmethod
    def validate_install_dir(cls, v: str) -> str:
        """Validate install_dir is absolute."""
        if not v.startswith("/"):
            raise ValueError("install_dir must start with '/'")
        return v.rstrip("/") or "/"

    @model_validator(mode="after")
    def validate_unique_destinations(self) -> "ProjectSchema":
        """Validate runtime destinations do not collide with the binary."""
        destinations = [r.destination for r in self.runtime]
        if len(destinations) != len(set(destinations)):
            raise ValueError("runtime destinations must be unique")
        if self.binary_destination in destinations:
            raise ValueError(
                f"runtime destination collides with binary: {self.binary_destination}"
            )
        return self

    @property
    def binary_name(self) -> str:
        """Return the binary name (defaults to the project name)."""
        return self.binary or self.name

    @property
    def binary_destination(self) -> str:
        """Return the install path of the binary in the runtime closure."""
        return f"{self.install_dir.rstrip('/')}/{self.binary_name}"


__all__ = [
    "DEFAULT_INSTALL_DIR",
    "NAME_PATTERN",
    "LockEntrySchema",
    "ProjectSchema",
    "RuntimeRequirementSchema",
    "ToolchainSchema",
]
