"""
Command configuration management.

Handles parsing, serializing, and editing the list of configured commands.
The list is stored in a settings store under the ``commands`` key as a JSON
array and is always written back in full.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

COMMANDS_KEY = "commands"

DEFAULT_INTERVAL = 5
DEFAULT_TIMEOUT = 10
INTERVAL_RANGE = (1, 3600)
TIMEOUT_RANGE = (1, 300)


@dataclass(frozen=True)
class CommandSpec:
    """
    One user-configured command.

    Specs are immutable; edits produce a new spec with the same id.
    """
    id: str
    command: str
    name: str = ""
    interval: int = DEFAULT_INTERVAL  # Seconds between automatic runs
    timeout: int = DEFAULT_TIMEOUT  # Seconds before a run is killed
    enabled: bool = True

    @property
    def label(self) -> str:
        return self.name or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'command': self.command,
            'interval': self.interval,
            'timeout': self.timeout,
            'enabled': self.enabled,
        }


def _clamp(value: int, bounds: tuple, field_name: str, command_id: str) -> int:
    low, high = bounds
    if value < low or value > high:
        clamped = min(max(value, low), high)
        logger.warning(
            f"Command '{command_id}': {field_name}={value} outside {low}-{high}, using {clamped}"
        )
        return clamped
    return value


def _require_int(data: Dict[str, Any], key: str, default: int, index: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    # bool is a subclass of int but never a valid count of seconds
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Command #{index}: '{key}' must be an integer, got {value!r}")
    return value


def spec_from_dict(data: Any, index: int = 0) -> CommandSpec:
    """
    Build a CommandSpec from one decoded JSON object.

    Args:
        data: Decoded JSON value for one command
        index: Position in the list (for error messages)

    Raises:
        ValueError: If the object does not have the expected shape
    """
    if not isinstance(data, dict):
        raise ValueError(f"Command #{index}: expected an object, got {type(data).__name__}")

    command_id = data.get('id')
    if not isinstance(command_id, str) or not command_id:
        raise ValueError(f"Command #{index}: 'id' must be a non-empty string")

    command = data.get('command')
    if not isinstance(command, str):
        raise ValueError(f"Command '{command_id}': 'command' must be a string")

    name = data.get('name')
    if name is None:
        name = ""
    elif not isinstance(name, str):
        raise ValueError(f"Command '{command_id}': 'name' must be a string")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"Command '{command_id}': 'enabled' must be a boolean")

    interval = _require_int(data, 'interval', DEFAULT_INTERVAL, index)
    timeout = _require_int(data, 'timeout', DEFAULT_TIMEOUT, index)

    return CommandSpec(
        id=command_id,
        command=command,
        name=name,
        interval=_clamp(interval, INTERVAL_RANGE, 'interval', command_id),
        timeout=_clamp(timeout, TIMEOUT_RANGE, 'timeout', command_id),
        enabled=enabled,
    )


def coerce_commands(specs: Iterable[Any]) -> List[CommandSpec]:
    """
    Normalize a list of CommandSpec objects and/or decoded JSON objects.

    Raises:
        ValueError: If any entry is malformed or ids are not unique
    """
    if isinstance(specs, (str, bytes, dict)):
        raise ValueError(f"Expected a list of commands, got {type(specs).__name__}")

    commands = []
    seen = set()
    for index, item in enumerate(specs):
        spec = item if isinstance(item, CommandSpec) else spec_from_dict(item, index)
        if spec.id in seen:
            raise ValueError(f"Duplicate command id '{spec.id}'")
        seen.add(spec.id)
        commands.append(spec)
    return commands


def parse_commands(text: str) -> List[CommandSpec]:
    """
    Parse the stored JSON text of the command list.

    Args:
        text: JSON array of command objects

    Returns:
        Commands in stored order

    Raises:
        ValueError: If the text is not a JSON array of well-formed commands
    """
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid commands JSON: {e}") from e

    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array of commands, got {type(data).__name__}")

    return coerce_commands(data)


def serialize_commands(commands: Iterable[CommandSpec]) -> str:
    """Serialize the full command list for storage."""
    return json.dumps([spec.to_dict() for spec in commands])


def new_command_id() -> str:
    """Generate a new stable command identifier."""
    return str(uuid.uuid4())


class CommandConfig:
    """
    Command list manager.

    Loads the command list from a settings store, edits it, and writes it
    back in full. Saving emits the store's change notification, which a
    running coordinator picks up as a reconfiguration.
    """

    def __init__(self, settings):
        """
        Initialize command configuration.

        Args:
            settings: SettingsStore holding the ``commands`` key
        """
        self.settings = settings
        self.commands: List[CommandSpec] = []
        self.load()

    def load(self):
        """Load the command list from the settings store."""
        try:
            self.commands = parse_commands(self.settings.get_string(COMMANDS_KEY))
        except ValueError as e:
            logger.error(f"Failed to parse commands: {e}")
            self.commands = []
        logger.debug(f"Loaded {len(self.commands)} command(s)")

    def save(self):
        """Write the full command list back to the settings store."""
        self.settings.set_string(COMMANDS_KEY, serialize_commands(self.commands))
        logger.info(f"Saved {len(self.commands)} command(s)")

    def add_command(
        self,
        command: str,
        name: str = "",
        interval: int = DEFAULT_INTERVAL,
        timeout: int = DEFAULT_TIMEOUT,
        enabled: bool = True,
        command_id: Optional[str] = None
    ) -> CommandSpec:
        """
        Add a new command to the configuration.

        Returns:
            The created CommandSpec

        Raises:
            ValueError: If the id already exists or a field is invalid
        """
        command_id = command_id or new_command_id()
        if any(c.id == command_id for c in self.commands):
            raise ValueError(f"Command with id '{command_id}' already exists")

        spec = spec_from_dict({
            'id': command_id,
            'name': name,
            'command': command,
            'interval': interval,
            'timeout': timeout,
            'enabled': enabled,
        }, len(self.commands))
        self.commands.append(spec)
        logger.info(f"Added command: {spec.label}")
        return spec

    def remove_command(self, command_id: str) -> bool:
        """
        Remove a command by id or name.

        Returns:
            True if command was removed, False if not found
        """
        spec = self.get_command(command_id)
        if not spec:
            return False

        self.commands = [c for c in self.commands if c.id != spec.id]
        logger.info(f"Removed command: {spec.label}")
        return True

    def get_command(self, key: str) -> Optional[CommandSpec]:
        """Get a command by id, falling back to a unique name match."""
        for spec in self.commands:
            if spec.id == key:
                return spec
        by_name = [c for c in self.commands if c.name and c.name == key]
        if len(by_name) == 1:
            return by_name[0]
        return None

    def update_command(self, key: str, **kwargs) -> CommandSpec:
        """
        Update fields of an existing command.

        Raises:
            ValueError: If the command is not found or a field is invalid
        """
        spec = self.get_command(key)
        if not spec:
            raise ValueError(f"Command '{key}' not found")
        if 'id' in kwargs:
            raise ValueError("Command id cannot be changed")

        unknown = set(kwargs) - set(asdict(spec))
        if unknown:
            raise ValueError(f"Unknown command field(s): {', '.join(sorted(unknown))}")

        # Re-validate through the same path as stored data
        updated = spec_from_dict(replace(spec, **kwargs).to_dict())
        self.commands = [updated if c.id == spec.id else c for c in self.commands]
        logger.info(f"Updated command: {updated.label}")
        return updated

    def enable_command(self, key: str) -> CommandSpec:
        """Enable a command."""
        return self.update_command(key, enabled=True)

    def disable_command(self, key: str) -> CommandSpec:
        """Disable a command."""
        return self.update_command(key, enabled=False)

    def get_enabled_commands(self) -> List[CommandSpec]:
        """Get list of enabled commands."""
        return [c for c in self.commands if c.enabled]

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for spec in self.commands:
            if not spec.command.strip():
                errors.append(f"Command {spec.label}: 'command' cannot be empty")

        return errors

    def __repr__(self):
        return f"CommandConfig(commands={len(self.commands)})"
