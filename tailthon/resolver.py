"""
Resolution of application names to log file paths.

The streaming core only needs to know where an application's stdout and
stderr logs live. Resolvers answer that question, either by asking the PM2
process manager or from a static mapping.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .config import RESOLVER_STATIC, ResolverConfig
from .models import LogSource

logger = logging.getLogger(__name__)


class ResolverError(Exception):
    """Raised when the process manager cannot be queried."""
    pass


class ProcessResolver(ABC):
    """Resolves a logical application name to its log files."""

    @abstractmethod
    async def resolve(self, app_name: str) -> Optional[LogSource]:
        """
        Look up an application.

        Args:
            app_name: Logical name of the application

        Returns:
            Optional[LogSource]: The log locations, or None if the application is unknown

        Raises:
            ResolverError: If the lookup itself failed
        """


def parse_pm2_processes(output: str, app_name: str) -> Optional[LogSource]:
    """
    Find an application in the output of ``pm2 jlist``.

    Processes are matched by name first, then by PM2 id. Anything pm2
    prints before the JSON list, such as an out-of-date daemon warning, is
    skipped.

    Args:
        output: JSON text printed by ``pm2 jlist``
        app_name: Name or id of the application

    Returns:
        Optional[LogSource]: The log locations, or None if no process matches

    Raises:
        ResolverError: If the output is not a JSON list
    """
    start = output.find("[")
    if start > 0:
        output = output[start:]
    try:
        processes = json.loads(output)
    except ValueError as e:
        raise ResolverError(f"Invalid JSON from pm2: {e}") from e
    if not isinstance(processes, list):
        raise ResolverError("Unexpected pm2 output: expected a list of processes")

    match = None
    for process in processes:
        if isinstance(process, dict) and process.get("name") == app_name:
            match = process
            break
    if match is None:
        for process in processes:
            if isinstance(process, dict) and str(process.get("pm_id")) == app_name:
                match = process
                break
    if match is None:
        return None

    env = match.get("pm2_env") or {}
    return LogSource(
        name=match.get("name", app_name),
        stdout_log_path=env.get("pm_out_log_path"),
        stderr_log_path=env.get("pm_err_log_path")
    )


class Pm2Resolver(ProcessResolver):
    """Resolves applications by querying the PM2 command line client."""

    def __init__(self, command: str = "pm2", timeout: float = 10.0):
        self.command = command
        self.timeout = timeout

    async def resolve(self, app_name: str) -> Optional[LogSource]:
        output = await self._jlist()
        return parse_pm2_processes(output, app_name)

    async def _jlist(self) -> str:
        logger.debug(f"Running command: {self.command} jlist")
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                "jlist",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ResolverError(f"Cannot run {self.command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ResolverError(f"{self.command} jlist timed out after {self.timeout} seconds")

        if process.returncode != 0:
            error_msg = f"{self.command} jlist failed with exit code {process.returncode}"
            if stderr:
                error_msg += f"\nStderr: {stderr.decode(errors='replace').strip()}"
            raise ResolverError(error_msg)

        return stdout.decode(errors="replace")


class StaticResolver(ProcessResolver):
    """Resolves applications from a fixed name to paths mapping."""

    def __init__(self, sources: Dict[str, Dict[str, Any]]):
        """
        Initialize the resolver.

        Args:
            sources: Mapping of application name to ``{"stdout": path, "stderr": path}``
        """
        self._sources = {
            name: LogSource(
                name=name,
                stdout_log_path=(paths or {}).get("stdout"),
                stderr_log_path=(paths or {}).get("stderr")
            )
            for name, paths in sources.items()
        }

    @classmethod
    def from_file(cls, sources_file: Union[str, Path]) -> "StaticResolver":
        """
        Load the mapping from a YAML file with a top level ``sources`` key.

        Raises:
            ResolverError: If the file cannot be read or has the wrong shape
        """
        try:
            with open(sources_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ResolverError(f"Failed to load sources file {sources_file}: {e}") from e

        sources = data.get("sources") if isinstance(data, dict) else None
        if not isinstance(sources, dict):
            raise ResolverError(f"Sources file {sources_file} must contain a 'sources' mapping")
        return cls(sources)

    def get_source_names(self) -> List[str]:
        """
        Get the configured application names.

        Returns:
            List[str]: Application names
        """
        return list(self._sources.keys())

    async def resolve(self, app_name: str) -> Optional[LogSource]:
        return self._sources.get(app_name)


def create_resolver(config: ResolverConfig) -> ProcessResolver:
    """Build the resolver selected by the configuration."""
    if config.backend == RESOLVER_STATIC:
        if not config.sources_file:
            raise ValueError("The static resolver requires TAILTHON_SOURCES_FILE")
        return StaticResolver.from_file(config.sources_file)
    return Pm2Resolver(command=config.pm2_command, timeout=config.timeout)
