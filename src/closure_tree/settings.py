"""
Tree settings models.

Pydantic models for validating closure_tree configuration, either passed
programmatically or loaded from a YAML file.

Example YAML:
    ```yaml
    closure_tree:
      url: "${TREE_DATABASE_URL:-sqlite:///tree.db}"
      node_table: labels
      edge_table: label_hierarchies
      order_column: sort_order
      type_tags: [label, date_label, directory_label, event_label]
      default_type_tag: label
      delete_batch_size: 500
    ```
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


class TreeSettings(BaseModel):
    """
    Configuration for a ClosureTree.

    Attributes:
        url: SQLAlchemy connection URL
        node_table: Name of the node table
        edge_table: Name of the closure (hierarchy edge) table
        order_column: Name of the sibling order column on the node table
        type_tags: Enumerable set of node subtypes sharing the hierarchy
        default_type_tag: Tag used when a node is created without one
        path_separator: Separator used when a path is given as one string
        delete_batch_size: Maximum ids per DELETE statement on destroy
        verify_order: Check sibling density before each mutation
        repair_order_conflicts: Renumber a non-dense group instead of raising
        pool_size: Maximum pool connections
        echo: Enable SQL logging
        auto_migrate: Create tables and indexes on initialization
        lazy: Defer engine creation until first use
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field("sqlite:///:memory:", description="SQLAlchemy connection URL")
    node_table: str = Field("tree_nodes", description="Node table name")
    edge_table: str = Field(
        "tree_node_hierarchies", description="Closure table name"
    )
    order_column: str = Field("order_value", description="Sibling order column")
    type_tags: List[str] = Field(
        default_factory=lambda: ["node"], description="Allowed node type tags"
    )
    default_type_tag: Optional[str] = Field(
        None, description="Tag for nodes created without one"
    )
    path_separator: str = Field("/", min_length=1)
    delete_batch_size: int = Field(500, ge=1, le=10000)
    verify_order: bool = True
    repair_order_conflicts: bool = False
    pool_size: int = Field(5, ge=1)
    echo: bool = False
    auto_migrate: bool = True
    lazy: bool = False

    @field_validator("node_table", "edge_table", "order_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Table and column names are interpolated into SQL; keep them plain."""
        if not _IDENTIFIER.match(v):
            raise ValueError(f"Invalid SQL identifier: {v!r}")
        return v

    @field_validator("type_tags")
    @classmethod
    def validate_type_tags(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("type_tags cannot be empty")
        if len(v) != len(set(v)):
            raise ValueError("type_tags cannot contain duplicates")
        return v

    @model_validator(mode="after")
    def resolve_default_type_tag(self) -> "TreeSettings":
        if self.default_type_tag is None:
            self.default_type_tag = self.type_tags[0]
        elif self.default_type_tag not in self.type_tags:
            raise ValueError(
                f"default_type_tag '{self.default_type_tag}' "
                f"is not one of {self.type_tags}"
            )
        if self.node_table == self.edge_table:
            raise ValueError("node_table and edge_table must differ")
        return self

    def merged(self, **overrides: Any) -> "TreeSettings":
        """Return a validated copy with keyword overrides applied."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        if "type_tags" in overrides and "default_type_tag" not in overrides:
            data["default_type_tag"] = None
        return TreeSettings(**data)


def expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in a value.

    Supports ${VAR} and ${VAR:-default} syntax, recursively through dicts
    and lists.
    """
    if isinstance(value, str):

        def replacer(match):
            default = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(match.group(1), default)

        return _ENV_PATTERN.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def settings_from_dict(data: Optional[Dict[str, Any]]) -> TreeSettings:
    """
    Build settings from a parsed YAML mapping.

    Accepts either the bare settings mapping or one nested under a
    top-level ``closure_tree`` key.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Settings must be a mapping, got {type(data).__name__}"
        )
    if "closure_tree" in data:
        data = data["closure_tree"] or {}
    return TreeSettings(**expand_env_vars(data))


def load_settings(path: Union[str, Path]) -> TreeSettings:
    """
    Load settings from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the content is not a valid settings mapping
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return settings_from_dict(data)


__all__ = ["TreeSettings", "expand_env_vars", "load_settings", "settings_from_dict"]
