"""
Per-kind descriptors.

Secrets, API keys and environment variables share one repository; what
differs between them (table, value column, naming rules, extra columns) is
described here. Projects and folders are container kinds: they hold no
encrypted value and group credentials through their own reference column
(`project_id` or `folder_id`) on the credential rows.
"""

import re
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from errors import ValidationError


class Kind(str, Enum):
    SECRET = "secret"
    API_KEY = "api_key"
    ENV_VAR = "environment_variable"
    PROJECT = "project"
    FOLDER = "folder"


OWNER_COLUMN = "user_id"
IV_COLUMN = "encryption_iv"
SALT_COLUMN = "encryption_salt"

ENV_VAR_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


@dataclass(frozen=True)
class KindDescriptor:
    """How one kind is stored and validated."""
    kind: Kind
    table: str
    label: str
    value_column: Optional[str] = None
    value_max_length: Optional[int] = None
    name_max_length: int = 255
    name_pattern: Optional[re.Pattern] = None
    name_pattern_message: str = ""
    description_max_length: int = 1000
    # Optional string columns and their maximum lengths (None = unbounded)
    extra_fields: dict[str, Optional[int]] = field(default_factory=dict)
    supports_tags: bool = False
    supports_expiry: bool = False
    has_access_count: bool = False
    search_fields: tuple[str, ...] = ("name", "description")
    # Column on credential rows that points at a container of this kind
    reference_column: Optional[str] = None
    
    @property
    def is_container(self) -> bool:
        return self.value_column is None
    
    @property
    def allowed_fields(self) -> frozenset[str]:
        fields = {"name", "description"}
        if not self.is_container:
            fields |= {"value", "container_id"}
        fields |= set(self.extra_fields)
        if self.supports_tags:
            fields.add("tags")
        if self.supports_expiry:
            fields.add("expires_at")
        return frozenset(fields)


SECRET = KindDescriptor(
    kind=Kind.SECRET,
    table="secrets",
    label="secret",
    value_column="encrypted_value",
    supports_tags=True,
    supports_expiry=True,
    has_access_count=True,
)

API_KEY = KindDescriptor(
    kind=Kind.API_KEY,
    table="api_keys",
    label="API key",
    value_column="encrypted_key",
    value_max_length=1000,
    extra_fields={"service": 255, "url": None, "username": None},
    supports_expiry=True,
    has_access_count=True,
    search_fields=("name", "description", "url", "username"),
)

ENV_VAR = KindDescriptor(
    kind=Kind.ENV_VAR,
    table="environment_variables",
    label="environment variable",
    value_column="encrypted_value",
    value_max_length=2000,
    name_pattern=ENV_VAR_NAME_PATTERN,
    name_pattern_message=(
        "must start with a letter and contain only uppercase letters, numbers, and underscores"
    ),
    extra_fields={"environment": 100},
)

PROJECT = KindDescriptor(
    kind=Kind.PROJECT,
    table="projects",
    label="project",
    reference_column="project_id",
)

FOLDER = KindDescriptor(
    kind=Kind.FOLDER,
    table="credential_folders",
    label="folder",
    reference_column="folder_id",
)

DESCRIPTORS: dict[Kind, KindDescriptor] = {d.kind: d for d in (SECRET, API_KEY, ENV_VAR, PROJECT, FOLDER)}

CREDENTIAL_KINDS = (Kind.SECRET, Kind.API_KEY, Kind.ENV_VAR)
CONTAINER_KINDS = (Kind.PROJECT, Kind.FOLDER)


def descriptor_for(kind: "Kind | str") -> KindDescriptor:
    """Look up the descriptor for a kind or its string value."""
    try:
        return DESCRIPTORS[Kind(kind)]
    except ValueError:
        raise ValidationError("kind", f"unknown kind {kind!r}") from None
