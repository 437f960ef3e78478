"""Base class for agent tools."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nekobot.bus.events import Attachment


@dataclass
class ToolContext:
    """Where the current invocation came from."""
    channel: str | None = None
    chat_id: str | None = None
    session_key: str | None = None
    origin: str | None = None  # channel:recipient that announcements default to
    cwd: Path | None = None  # set by the cd tool; relative paths resolve here
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class ToolResult:
    """Outcome of one dispatch. Failures carry the error kind instead of raising."""
    name: str
    ok: bool
    output: str = ""
    error_kind: str | None = None
    retryable: bool = False
    duration_ms: float = 0.0

    def __str__(self) -> str:
        if self.ok:
            return self.output
        return f"Error[{self.error_kind}]: {self.output}"


class Tool(ABC):
    """
    Abstract base class for agent tools.

    Tools are capabilities the agent can call: reading files, running
    commands, editing memory, scheduling jobs. Failures are raised as
    ``NekobotError`` subclasses and turned into a ``ToolResult`` by the
    registry.
    """

    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    # Seconds; None means the registry default applies.
    timeout: float | None = None
    # When true, execute() receives the ToolContext as its first argument.
    needs_context: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """
        Execute the tool with given parameters.

        Returns:
            String result of the tool execution.
        """
        pass

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Validate tool parameters against JSON schema. Returns error list (empty if valid)."""
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t, label = schema.get("type"), path or "parameter"
        if t in self._TYPE_MAP:
            bad = not isinstance(val, self._TYPE_MAP[t])
            if t in ("integer", "number") and isinstance(val, bool):
                bad = True
            if bad:
                return [f"{label} should be {t}"]

        errors: list[str] = []
        if "enum" in schema and val not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if t in ("integer", "number"):
            if "minimum" in schema and val < schema["minimum"]:
                errors.append(f"{label} must be >= {schema['minimum']}")
            if "maximum" in schema and val > schema["maximum"]:
                errors.append(f"{label} must be <= {schema['maximum']}")
        if t == "string":
            if "minLength" in schema and len(val) < schema["minLength"]:
                errors.append(f"{label} must be at least {schema['minLength']} chars")
            if "maxLength" in schema and len(val) > schema["maxLength"]:
                errors.append(f"{label} must be at most {schema['maxLength']} chars")
        if t == "object":
            props = schema.get("properties", {})
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in props:
                    errors.extend(self._validate(v, props[k], path + "." + k if path else k))
        if t == "array" and "items" in schema:
            for i, item in enumerate(val):
                errors.extend(
                    self._validate(item, schema["items"], f"{path}[{i}]" if path else f"[{i}]")
                )
        return errors

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
