"""
Data models for jobs and their run history.
"""

import os
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Union, Dict, Any

from cronos.config import Settings
from cronos.schedule import Schedule, local_now, schedule_from_dict


class AgentModel(str, Enum):
    """Models an agent job can be pinned to."""
    SONNET = "sonnet"
    OPUS = "opus"
    HAIKU = "haiku"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['AgentModel']:
        """Return the matching model, or None for an unknown/empty value."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class CustomCommand:
    """A literal shell command."""
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'custom', 'text': self.text}


@dataclass
class AgentInvocation:
    """A prompt handed to the agent CLI, optionally with context directories."""
    prompt: str
    model: Optional[AgentModel] = None
    context_directories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'agent',
            'prompt': self.prompt,
            'model': self.model.value if self.model else None,
            'context_directories': list(self.context_directories),
        }


CommandSpec = Union[CustomCommand, AgentInvocation]


def command_from_dict(data: Dict[str, Any]) -> CommandSpec:
    """
    Decode a command specification.

    Older documents have no 'type' (custom command) and may carry a single
    'context_directory' string instead of a list.
    """
    command_type = data.get('type', 'custom')
    if command_type == 'custom':
        return CustomCommand(text=data.get('text', ''))
    if command_type == 'agent':
        if 'context_directories' in data:
            directories = list(data['context_directories'] or [])
        else:
            legacy_dir = data.get('context_directory') or ''
            directories = [legacy_dir] if legacy_dir else []
        return AgentInvocation(
            prompt=data.get('prompt') or '',
            model=AgentModel.parse(data.get('model')),
            context_directories=directories,
        )
    raise ValueError(f"Unknown command type: {command_type!r}")


def encode_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def decode_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Job:
    """A user-defined command and the schedule it runs on."""
    name: str
    command: CommandSpec
    working_directory: str
    schedule: Schedule
    enabled: bool = True
    last_run: Optional[datetime] = None
    last_run_successful: Optional[bool] = None
    id: str = field(default_factory=_new_id)

    def effective_command(self, settings: Settings) -> str:
        """
        The shell command actually executed for this job.

        Args:
            settings: Current settings (agent executable, default model)

        Returns:
            Command text for `<shell> -c`
        """
        command = self.command
        if isinstance(command, CustomCommand):
            return command.text
        if isinstance(command, AgentInvocation):
            model = (
                command.model
                or AgentModel.parse(settings.default_model)
                or AgentModel.SONNET
            )
            parts = [
                settings.agent_executable,
                '--model', model.value,
                '-p', shlex.quote(command.prompt),
            ]
            for directory in command.context_directories:
                if directory:
                    parts.append(shlex.quote(os.path.expanduser(directory)))
            return ' '.join(parts)
        raise TypeError(f"Unsupported command specification: {command!r}")

    def matches(self, query: str) -> bool:
        """Case-insensitive search over name, command text and prompt."""
        if not query:
            return True
        query = query.lower()
        haystack = [self.name]
        if isinstance(self.command, CustomCommand):
            haystack.append(self.command.text)
        else:
            haystack.append(self.command.prompt)
        return any(query in text.lower() for text in haystack)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'command': self.command.to_dict(),
            'working_directory': self.working_directory,
            'schedule': self.schedule.to_dict(),
            'enabled': self.enabled,
            'last_run': encode_time(self.last_run),
            'last_run_successful': self.last_run_successful,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        return cls(
            id=data['id'],
            name=data['name'],
            command=command_from_dict(data.get('command') or {}),
            working_directory=data.get('working_directory', '~'),
            schedule=schedule_from_dict(data['schedule']),
            enabled=data.get('enabled', True),
            last_run=decode_time(data.get('last_run')),
            last_run_successful=data.get('last_run_successful'),
        )


@dataclass
class LogRun:
    """
    One execution of a job.

    A run is in flight until ended_at, exit_code and success are set; it is
    completed exactly once and never changed afterwards.
    """
    job_id: str
    started_at: datetime = field(default_factory=local_now)
    id: str = field(default_factory=_new_id)
    ended_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    success: Optional[bool] = None

    @property
    def stdout_filename(self) -> str:
        return f"{self.id}.stdout"

    @property
    def stderr_filename(self) -> str:
        return f"{self.id}.stderr"

    @property
    def in_flight(self) -> bool:
        return self.ended_at is None

    @property
    def duration(self) -> Optional[float]:
        """Duration in seconds, if completed."""
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def duration_string(self) -> Optional[str]:
        """Human-readable duration (e.g. '<1s', '42s', '3m 5s', '2h 10m')."""
        duration = self.duration
        if duration is None:
            return None
        seconds = int(duration)
        if duration < 1:
            return "<1s"
        elif seconds < 60:
            return f"{seconds}s"
        elif seconds < 3600:
            return f"{seconds // 60}m {seconds % 60}s"
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'started_at': encode_time(self.started_at),
            'ended_at': encode_time(self.ended_at),
            'exit_code': self.exit_code,
            'success': self.success,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LogRun':
        return cls(
            id=data['id'],
            job_id=data['job_id'],
            started_at=decode_time(data['started_at']),
            ended_at=decode_time(data.get('ended_at')),
            exit_code=data.get('exit_code'),
            success=data.get('success'),
        )
