"""
Plugin Dependency Installer.

Each plugin's own PyPI dependencies are installed into ``<plugin>/deps``
with ``pip install --target`` so plugins never share or pollute the host
environment. The loader puts that directory on sys.path.
"""

import logging
import shutil
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from packaging.requirements import InvalidRequirement, Requirement

from xaheen.errors import DependencyInstallError, ValidationError

logger = logging.getLogger(__name__)

DEPS_DIR = "deps"


class DependencyInstaller:
    """
    Install plugin dependencies in isolation.

    The runner defaults to subprocess.run and is replaceable in tests.
    """

    def __init__(
        self,
        runner: Callable[..., Any] = subprocess.run,
        timeout: float = 300.0,
        python: str = sys.executable,
    ):
        self.runner = runner
        self.timeout = timeout
        self.python = python

    def install(self, requirements: list[str], plugin_dir: Path) -> list[str]:
        """
        Install requirements into ``plugin_dir/deps``.

        Args:
            requirements: PEP 508 requirement strings
            plugin_dir: Staged plugin directory

        Returns:
            The requirements that were installed (empty when none)

        Raises:
            ValidationError: If a requirement is malformed
            DependencyInstallError: If pip fails; deps/ is removed first
        """
        if not requirements:
            return []

        for requirement in requirements:
            try:
                Requirement(requirement)
            except InvalidRequirement as e:
                raise ValidationError(f"Invalid dependency {requirement!r}: {e}") from e

        deps_dir = plugin_dir / DEPS_DIR
        cmd = [
            self.python,
            "-m",
            "pip",
            "install",
            "--target",
            str(deps_dir),
            "--no-input",
            "--disable-pip-version-check",
            *requirements,
        ]
        logger.debug("installing dependencies: %s", " ".join(cmd))

        try:
            result = self.runner(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            self._cleanup(deps_dir)
            raise DependencyInstallError(f"Python interpreter not found: {self.python}") from e
        except subprocess.TimeoutExpired as e:
            self._cleanup(deps_dir)
            raise DependencyInstallError(
                f"Dependency installation timed out after {self.timeout}s"
            ) from e

        if result.returncode != 0:
            self._cleanup(deps_dir)
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            raise DependencyInstallError(
                f"Failed to install dependencies ({', '.join(requirements)}): "
                f"{detail[-1] if detail else f'pip exited with {result.returncode}'}"
            )

        logger.info("installed %d dependencies into %s", len(requirements), deps_dir)
        return list(requirements)

    def _cleanup(self, deps_dir: Path) -> None:
        if deps_dir.exists():
            shutil.rmtree(deps_dir, ignore_errors=True)
