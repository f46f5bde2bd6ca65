"""Reqbench Plugin Bridge — Tool, Governance and Plugin Models

Settings objects validate themselves in ``__post_init__`` so a bad tool
definition or plugin manifest fails at startup, not at first call.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Any, Callable, Dict, List, Type
import json
import logging
import math
import os
import re
import shutil
import stat

from models.entities import to_camel

_logger = logging.getLogger("reqbench.models")

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


class SafetyLevel(Enum):
    SAFE = "SAFE"                 # reads
    MODERATE = "MODERATE"         # creates, updates, sends
    DESTRUCTIVE = "DESTRUCTIVE"   # deletes

    @property
    def tier(self) -> int:
        return {
            SafetyLevel.SAFE: 0,
            SafetyLevel.MODERATE: 1,
            SafetyLevel.DESTRUCTIVE: 2,
        }[self]


class PolicyMode(Enum):
    READ_ONLY = "READ_ONLY"
    READ_WRITE = "READ_WRITE"
    FULL = "FULL"

    @property
    def max_safety_level(self) -> SafetyLevel:
        """The highest safety level this policy mode will allow."""
        return {
            PolicyMode.READ_ONLY: SafetyLevel.SAFE,
            PolicyMode.READ_WRITE: SafetyLevel.MODERATE,
            PolicyMode.FULL: SafetyLevel.DESTRUCTIVE,
        }[self]


class ActionType(Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass
class ToolArguments:
    """Base for typed tool argument records.

    Subclasses declare snake_case fields; ``from_params`` maps the
    (already schema-validated) camelCase tool arguments onto them.
    """

    @classmethod
    def from_params(cls, params: Dict[str, Any]):
        kwargs = {}
        for f in fields(cls):
            wire_name = to_camel(f.name)
            if wire_name in params:
                kwargs[f.name] = params[wire_name]
        return cls(**kwargs)


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict
    handler: Callable
    safety_level: SafetyLevel
    module_id: str
    arguments: Optional[Type[ToolArguments]] = None  # record the handler receives
    max_execution_seconds: float = 30.0
    redact_params: List[str] = field(default_factory=list)  # param keys to redact in logs
    redact_result: bool = False  # whether to redact the handler result in logs

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Tool name cannot be empty")
        if not self.module_id or not self.module_id.strip():
            raise ValueError("Tool module_id cannot be empty")
        if (not isinstance(self.max_execution_seconds, (int, float))
                or isinstance(self.max_execution_seconds, bool)
                or not math.isfinite(self.max_execution_seconds)
                or self.max_execution_seconds <= 0):
            raise ValueError("max_execution_seconds must be a finite positive number")
        if self.max_execution_seconds > 3600:
            raise ValueError("max_execution_seconds must be <= 3600 (1 hour)")
        if isinstance(self.description, str) and len(self.description) > 4096:
            raise ValueError("Tool description must be <= 4096 characters")
        if not re.match(r'^[a-zA-Z][a-zA-Z0-9_\-]*$', self.name):
            raise ValueError(f"Tool name {self.name!r} contains invalid characters")
        for key in self.redact_params:
            if key not in self.parameters:
                raise ValueError(f"Tool {self.name!r}: redacted param {key!r} is not declared")


@dataclass
class InvocationRecord:
    invocation_id: str
    tool_name: str
    module_id: str
    params: Dict
    safety_level: SafetyLevel
    created_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    status: str
    result: Optional[Any]
    error: Optional[str]
    request_id: Optional[str] = None  # correlate with MCP request


@dataclass
class GovernanceDecision:
    action: ActionType
    reason: str
    policy_mode: Optional[PolicyMode] = None
    evaluated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.evaluated_at is None:
            self.evaluated_at = datetime.now(timezone.utc)


MANIFEST_FILENAME = "reqbench-plugin.json"
_MAX_MANIFEST_BYTES = 1024 * 1024


@dataclass
class PluginDescriptor:
    """An out-of-process plugin: a command speaking the event protocol on
    its stdin/stdout, launched by the host with a minimal environment."""
    name: str                       # Unique identifier, [a-z0-9-]+
    version: str                    # Semver string (e.g. "1.0.0")
    command: str                    # Executable path or PATH name (e.g. "python3")
    args: List[str]                 # Subprocess arguments (e.g. ["-u", "plugin.py"])

    # Environment control: allowlisted keys only
    env_allowlist: List[str] = field(default_factory=list)

    # Per-request timeout for the plugin's channel
    timeout_seconds: float = 30.0

    # Set during discovery
    working_dir: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.name, str):
            self.name = _CONTROL_CHARS.sub('', self.name)
        if not self.name or not re.match(r'^[a-z0-9][a-z0-9-]*$', self.name):
            raise ValueError(
                f"Plugin name '{self.name!r}' invalid: must be [a-z0-9-]+, "
                f"start with alphanumeric"
            )

        # Resolve to an absolute path now: the subprocess env has a
        # sanitized PATH
        if isinstance(self.command, str):
            self.command = _CONTROL_CHARS.sub('', self.command)
        if not self.command:
            raise ValueError("Plugin command cannot be empty")
        if os.path.isabs(self.command):
            if not os.path.isfile(self.command):
                raise ValueError(f"Plugin command not found: {self.command}")
        else:
            resolved = shutil.which(self.command)
            if resolved is None:
                raise ValueError(f"Plugin command '{self.command}' not found on PATH")
            self.command = os.path.realpath(resolved)

        if isinstance(self.version, str):
            self.version = _CONTROL_CHARS.sub('', self.version)
        if not isinstance(self.version, str) or not re.match(
                r'^\d+\.\d+\.\d+([a-zA-Z0-9._+-]*)$', self.version):
            raise ValueError(
                f"Plugin version '{self.version!r}' invalid: must be semver (e.g. 1.0.0)"
            )

        if not isinstance(self.args, list):
            raise ValueError("Plugin args must be a list")
        sanitized_args = []
        for i, arg in enumerate(self.args):
            if not isinstance(arg, str):
                raise ValueError(f"Plugin args[{i}] must be a string, got {type(arg).__name__}")
            clean = arg.replace('\x00', '')
            if clean != arg:
                _logger.warning("Plugin '%s': null byte stripped from args[%d]", self.name, i)
            sanitized_args.append(clean)
        self.args = sanitized_args

        if not isinstance(self.timeout_seconds, (int, float)) or isinstance(self.timeout_seconds, bool):
            raise ValueError("timeout_seconds must be a number")
        if not math.isfinite(self.timeout_seconds) or self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be a finite positive number")
        if self.timeout_seconds > 3600:
            raise ValueError("timeout_seconds must be <= 3600 (1 hour)")

    @classmethod
    def from_json(cls, manifest_path: str) -> PluginDescriptor:
        """Load a PluginDescriptor from a reqbench-plugin.json manifest.

        Expected JSON format:
        {
            "name": "my-plugin",
            "version": "1.0.0",
            "command": "python3",
            "args": ["-u", "plugin.py"],
            "env_allowlist": ["MY_API_KEY"],
            "timeout_seconds": 30
        }
        """
        with open(manifest_path, 'rb') as f_raw:
            fd_stat = os.fstat(f_raw.fileno())
            if not stat.S_ISREG(fd_stat.st_mode):
                raise ValueError(
                    f"Plugin manifest is not a regular file (mode={oct(fd_stat.st_mode)})"
                )
            if fd_stat.st_size > _MAX_MANIFEST_BYTES:
                raise ValueError(
                    f"Plugin manifest too large ({fd_stat.st_size:,} bytes, "
                    f"limit {_MAX_MANIFEST_BYTES:,})"
                )
            raw = f_raw.read(_MAX_MANIFEST_BYTES + 1)
        try:
            data = json.loads(raw.decode('utf-8'))
        except RecursionError:
            raise ValueError(f"Recursion bomb in plugin manifest {manifest_path!r}")
        except UnicodeDecodeError:
            raise ValueError(f"Plugin manifest is not valid UTF-8: {manifest_path!r}")

        if not isinstance(data, dict):
            raise ValueError(
                f"Plugin manifest must be a JSON object, got {type(data).__name__}"
            )

        for key in ('name', 'version', 'command', 'args'):
            if key not in data:
                raise ValueError(f"Missing required field {key!r} in {manifest_path!r}")
        for str_key in ('name', 'version', 'command'):
            if not isinstance(data[str_key], str) or not data[str_key].strip():
                raise ValueError(
                    f"Field '{str_key}' must be a non-empty string, "
                    f"got {type(data[str_key]).__name__}"
                )

        env_allowlist = data.get('env_allowlist', [])
        if not isinstance(env_allowlist, list):
            raise ValueError(
                f"env_allowlist must be a list, got {type(env_allowlist).__name__}"
            )

        working_dir = os.path.dirname(os.path.abspath(manifest_path))
        args = data['args']
        if isinstance(args, list):
            # Relative script paths resolve against the manifest directory
            args = [
                os.path.join(working_dir, a)
                if isinstance(a, str) and a.endswith('.py') and not os.path.isabs(a)
                else a
                for a in args
            ]

        return cls(
            name=data['name'],
            version=data['version'],
            command=data['command'],
            args=args,
            env_allowlist=env_allowlist,
            timeout_seconds=data.get('timeout_seconds', 30.0),
            working_dir=working_dir,
        )

    # Never forwarded to plugin subprocesses, even if allowlisted
    _ENV_DENYLIST = frozenset({
        'LD_PRELOAD', 'LD_LIBRARY_PATH', 'LD_AUDIT',
        'DYLD_INSERT_LIBRARIES', 'DYLD_LIBRARY_PATH',
        'DYLD_FRAMEWORK_PATH', 'DYLD_FALLBACK_LIBRARY_PATH',
        'PYTHONSTARTUP', 'PYTHONPATH',
        'NODE_OPTIONS',
        'BASH_ENV', 'ENV', 'CDPATH',
        'REQBENCH_MCP_AUTH_TOKEN',
    })

    def build_subprocess_env(self) -> Dict[str, str]:
        """Build a minimal environment for the plugin subprocess.

        Starts from an empty dict, not a copy of os.environ. Adds PATH,
        Windows essentials and allowlisted keys; denylisted keys are never
        forwarded.
        """
        env: Dict[str, str] = {}

        if 'PATH' in os.environ:
            env['PATH'] = os.environ['PATH']

        if os.name == 'nt':
            for key in ('SYSTEMROOT', 'TEMP', 'TMP', 'USERPROFILE', 'COMSPEC', 'PATHEXT'):
                if key in os.environ:
                    env[key] = os.environ[key]

        for key in self.env_allowlist:
            if not isinstance(key, str):
                _logger.warning(
                    "Plugin '%s': non-string env_allowlist entry skipped (type %s)",
                    self.name, type(key).__name__,
                )
                continue
            key = _CONTROL_CHARS.sub('', key)
            if not key:
                continue
            if key.upper() in self._ENV_DENYLIST:
                _logger.warning(
                    "Plugin '%s': env key '%s' blocked by denylist", self.name, key,
                )
                continue
            if key in os.environ:
                env[key] = os.environ[key]

        return env
