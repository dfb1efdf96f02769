"""
Restricted front-matter parsing for persona documents.

Documents are markdown with an optional YAML front-matter block fenced by
``---`` lines. Parsing fails closed: any policy violation raises
``StructuredParseError`` and no partial result is returned.

The YAML pass happens in three stages:

1. Stream the parser events without constructing anything, rejecting
   non-standard tags and alias-heavy documents (exponential expansion).
2. Construct with ``RestrictedLoader``, which knows only plain data types.
   The constructed value is then walked with aliases expanded and refused
   past a fixed node count.
3. Validate field shapes with JSON Schema, then pass every string through
   the content validator.
"""

from typing import Any

import yaml
from jsonschema import Draft7Validator
from pydantic import BaseModel, ConfigDict, Field

from ..util.errors import StructuredParseError
from ..util.log import get_logger
from .content import ContentValidator
from .events import SecurityEventType
from .patterns import METADATA_FIELD, PERSONA_BODY, PERSONA_NAME
from .severity import Severity, max_severity

logger = get_logger(__name__)

FENCE = "---"
YAML_TAG_PREFIX = "tag:yaml.org,2002:"

_CONSTRUCTIBLE_TAGS = frozenset(
    YAML_TAG_PREFIX + name for name in ("null", "bool", "int", "float", "str", "seq", "map")
)
_ALLOWED_EXPLICIT_TAGS = _CONSTRUCTIBLE_TAGS | {YAML_TAG_PREFIX + "timestamp", YAML_TAG_PREFIX + "merge"}


def _reject_tag(loader, node):
    raise yaml.constructor.ConstructorError(
        None, None, f"tag {node.tag!r} is not allowed", node.start_mark
    )


class RestrictedLoader(yaml.SafeLoader):
    """SafeLoader limited to null, bool, int, float, str, lists and mappings."""


RestrictedLoader.yaml_constructors = {
    tag: constructor
    for tag, constructor in yaml.SafeLoader.yaml_constructors.items()
    if tag in _CONSTRUCTIBLE_TAGS
}
# Dates stay strings
RestrictedLoader.add_constructor(YAML_TAG_PREFIX + "timestamp", yaml.SafeLoader.construct_yaml_str)
RestrictedLoader.add_constructor(None, _reject_tag)


PERSONA_METADATA_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1, "maxLength": 100},
        "description": {"type": "string", "maxLength": 500},
        "author": {"type": "string", "maxLength": 100},
        "category": {"type": "string", "maxLength": 50},
        "version": {"type": "string", "pattern": r"^\d+\.\d+(\.\d+)?$"},
        "age_rating": {"enum": ["all", "13+", "18+"]},
        "triggers": {
            "type": "array",
            "maxItems": 20,
            "items": {"type": "string", "maxLength": 50},
        },
        "content_flags": {
            "type": "array",
            "maxItems": 20,
            "items": {"type": "string", "maxLength": 50},
        },
        "created_date": {"type": "string", "maxLength": 40},
        "unique_id": {"type": "string", "maxLength": 200},
    },
    "additionalProperties": {
        "type": ["string", "number", "boolean", "array", "object", "null"],
    },
}


class PersonaMetadata(BaseModel):
    """Typed persona front-matter. Unknown keys are kept as extras."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    description: str | None = None
    author: str | None = None
    category: str | None = None
    version: str | None = None
    age_rating: str | None = None
    triggers: list[str] = Field(default_factory=list)
    content_flags: list[str] = Field(default_factory=list)
    created_date: str | None = None
    unique_id: str | None = None


class PersonaDocument(BaseModel):
    metadata: PersonaMetadata
    body: str
    severity: Severity = Severity.NONE
    matched_patterns: list[str] = Field(default_factory=list)


def split_front_matter(document: str) -> tuple[str | None, str]:
    """Split a document into (yaml text or None, body)."""
    lines = document.split("\n")
    if not lines or lines[0].strip().lstrip("\ufeff") != FENCE:
        return None, document

    for idx in range(1, len(lines)):
        if lines[idx].strip() == FENCE:
            return "\n".join(lines[1:idx]), "\n".join(lines[idx + 1:])

    raise StructuredParseError("front-matter fence is not closed")


class SecureStructuredParser:
    """Parses persona documents with a restricted YAML schema."""

    def __init__(
        self,
        content_validator: ContentValidator,
        max_yaml_bytes: int = 64 * 1024,
        max_document_bytes: int = 1024 * 1024,
        max_alias_ratio: int = 5,
        max_aliases: int = 50,
        max_expanded_nodes: int = 10_000,
    ):
        self.content_validator = content_validator
        self.security_log = content_validator.security_log
        self.max_yaml_bytes = max_yaml_bytes
        self.max_document_bytes = max_document_bytes
        self.max_alias_ratio = max_alias_ratio
        self.max_aliases = max_aliases
        self.max_expanded_nodes = max_expanded_nodes
        self._schema_validator = Draft7Validator(PERSONA_METADATA_SCHEMA)

    @classmethod
    def from_config(cls, content_validator: ContentValidator, config) -> "SecureStructuredParser":
        return cls(
            content_validator,
            max_yaml_bytes=config.max_yaml_bytes,
            max_document_bytes=config.max_document_bytes,
            max_alias_ratio=config.max_alias_ratio,
            max_aliases=config.max_aliases,
            max_expanded_nodes=config.max_expanded_nodes,
        )

    def parse(self, document: str) -> PersonaDocument:
        """Parse and validate a persona document.

        Raises:
            StructuredParseError: the document is malformed or violates policy
        """
        try:
            return self._parse(document)
        except StructuredParseError as e:
            self.security_log.record(
                SecurityEventType.STRUCTURED_REJECTED,
                Severity.parse(e.details.get("severity_level", "high")),
                "structured_parser",
                {"reason": e.message, "pattern_ids": e.matched_patterns},
            )
            raise

    def load_yaml(self, yaml_text: str) -> dict[str, Any]:
        """Check and construct a front-matter mapping."""
        if len(yaml_text.encode("utf-8")) > self.max_yaml_bytes:
            raise StructuredParseError(f"front-matter exceeds {self.max_yaml_bytes} bytes")

        self._check_events(yaml_text)

        try:
            data = yaml.load(yaml_text, Loader=RestrictedLoader)
        except yaml.YAMLError as e:
            raise StructuredParseError(f"invalid YAML: {_yaml_problem(e)}", cause=e) from e

        self._check_expansion(data)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StructuredParseError("front-matter must be a mapping")
        return data

    def _parse(self, document: str) -> PersonaDocument:
        if len(document.encode("utf-8")) > self.max_document_bytes:
            raise StructuredParseError(f"document exceeds {self.max_document_bytes} bytes")

        yaml_text, body = split_front_matter(document)
        data = self.load_yaml(yaml_text) if yaml_text is not None else {}
        version = data.get("version")
        if isinstance(version, (int, float)) and not isinstance(version, bool):
            data["version"] = str(version)

        errors = sorted(self._schema_validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
        if errors:
            first = errors[0]
            location = ".".join(str(p) for p in first.path) or "<root>"
            raise StructuredParseError(
                f"metadata field '{location}' is invalid ({first.validator})"
            )

        severities: list[Severity] = []
        matched: list[str] = []
        clean = self._validate_value(data, None, severities, matched)

        body_verdict = self.content_validator.validate(body, PERSONA_BODY)
        if not body_verdict.accepted:
            raise StructuredParseError(
                "persona body blocked",
                severity_level=body_verdict.severity.value,
                matched_patterns=list(body_verdict.matched_patterns),
            )
        severities.append(body_verdict.severity)
        matched.extend(body_verdict.matched_patterns)

        return PersonaDocument(
            metadata=PersonaMetadata(**clean),
            body=body_verdict.sanitized,
            severity=max_severity(*severities),
            matched_patterns=list(dict.fromkeys(matched)),
        )

    def _check_events(self, yaml_text: str) -> None:
        anchors = 0
        aliases = 0
        try:
            for event in yaml.parse(yaml_text, Loader=RestrictedLoader):
                if isinstance(event, yaml.AliasEvent):
                    aliases += 1
                    if aliases > self.max_aliases:
                        raise StructuredParseError(f"more than {self.max_aliases} aliases")
                    continue
                if getattr(event, "anchor", None):
                    anchors += 1
                tag = getattr(event, "tag", None)
                if tag is not None and tag not in _ALLOWED_EXPLICIT_TAGS:
                    raise StructuredParseError(
                        f"tag {tag!r} is not allowed",
                        severity_level=Severity.CRITICAL.value,
                    )
        except yaml.YAMLError as e:
            raise StructuredParseError(f"invalid YAML: {_yaml_problem(e)}", cause=e) from e

        if aliases and aliases > anchors * self.max_alias_ratio:
            raise StructuredParseError(
                f"alias/anchor ratio {aliases}/{anchors} exceeds {self.max_alias_ratio}"
            )

    def _check_expansion(self, data: Any) -> None:
        # Shared alias targets are counted once per reference
        count = 0
        stack = [data]
        while stack:
            value = stack.pop()
            count += 1
            if count > self.max_expanded_nodes:
                raise StructuredParseError(
                    f"front-matter expands to more than {self.max_expanded_nodes} nodes"
                )
            if isinstance(value, dict):
                stack.extend(value.keys())
                stack.extend(value.values())
            elif isinstance(value, list):
                stack.extend(value)

    def _validate_value(self, value: Any, key: str | None, severities: list, matched: list) -> Any:
        if isinstance(value, str):
            context = PERSONA_NAME if key == "name" else METADATA_FIELD
            verdict = self.content_validator.validate(value, context)
            if not verdict.accepted:
                raise StructuredParseError(
                    f"metadata field '{key or '<item>'}' blocked",
                    severity_level=verdict.severity.value,
                    matched_patterns=list(verdict.matched_patterns),
                )
            severities.append(verdict.severity)
            matched.extend(verdict.matched_patterns)
            return verdict.sanitized
        if isinstance(value, dict):
            result = {}
            for k, v in value.items():
                clean_key = self._validate_value(str(k), None, severities, matched)
                result[clean_key] = self._validate_value(v, str(k), severities, matched)
            return result
        if isinstance(value, list):
            return [self._validate_value(item, key, severities, matched) for item in value]
        return value


def _yaml_problem(error: yaml.YAMLError) -> str:
    # Omit the context snippet, which echoes document content
    problem = getattr(error, "problem", None)
    mark = getattr(error, "problem_mark", None)
    if problem and mark is not None:
        return f"{problem} at line {mark.line + 1}, column {mark.column + 1}"
    return problem or error.__class__.__name__
