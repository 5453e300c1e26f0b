"""Language registry.

Maps a language identifier to the capability descriptor the engine needs:
default image, code file name, how to materialize files and how to build
the in-container install and run commands. Languages can be added at
runtime; registering an existing identifier replaces it.

Usage:
    registry = LanguageRegistry.with_defaults()
    registry.register(
        LanguageConfig(
            language="ruby",
            default_image="ruby:3.2-alpine",
            code_filename="code.rb",
            run_template="ruby {file}",
            install_template="gem install {packages}",
        )
    )
"""

from __future__ import annotations

import logging
import shlex
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from py_code_sandbox.errors import InvalidRequestError, UnknownLanguageError
from py_code_sandbox.types import InlineCode, RunApp
from py_code_sandbox.workspace import resolve_within_root

if TYPE_CHECKING:
    from py_code_sandbox.types import ExecutionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageConfig:
    """Capability descriptor of one language.

    run_template and install_template are shell snippets; ``{file}`` is the
    quoted code or entry file, ``{packages}`` the quoted dependency list.
    Subclass and override the methods for languages that need more than
    templates.
    """

    language: str
    default_image: str
    code_filename: str
    run_template: str
    install_template: str | None = None

    def prepare_files(self, request: ExecutionRequest, directory: Path) -> None:
        """Materialize the request's code or application into directory.

        Raises:
            InvalidRequestError: If a run-app entry file does not exist.
            PathSecurityError: If a file would land outside directory.
        """
        source = request.source
        if isinstance(source, InlineCode):
            target = resolve_within_root(directory, self.code_filename)
            target.write_text(source.code, encoding="utf-8")
            return

        if isinstance(source, RunApp):
            app_dir = Path(source.cwd)
            if not app_dir.is_dir():
                raise InvalidRequestError(f"Application directory not found: {source.cwd}")
            entry = resolve_within_root(app_dir, source.entry_file)
            if not entry.is_file():
                raise InvalidRequestError(
                    f"Entry file '{source.entry_file}' not found in {source.cwd}"
                )
            shutil.copytree(app_dir, directory, symlinks=True, dirs_exist_ok=True)
            return

        raise InvalidRequestError(f"Unsupported request source: {type(source).__name__}")

    def build_inline_command(self) -> list[str]:
        return ["sh", "-c", self.run_template.format(file=shlex.quote(self.code_filename))]

    def build_run_app_command(self, entry_path: str) -> list[str]:
        return ["sh", "-c", self.run_template.format(file=shlex.quote(entry_path))]

    def build_install_command(self, dependencies: list[str]) -> list[str] | None:
        """Command installing dependencies, or None if the language has no installer."""
        if not self.install_template or not dependencies:
            return None
        packages = " ".join(shlex.quote(dep) for dep in dependencies)
        return ["sh", "-c", self.install_template.format(packages=packages)]

    def build_command(self, request: ExecutionRequest) -> list[str]:
        """Run command for either request form."""
        if isinstance(request.source, RunApp):
            return self.build_run_app_command(request.source.entry_file)
        return self.build_inline_command()


DEFAULT_LANGUAGES: tuple[LanguageConfig, ...] = (
    LanguageConfig(
        language="python",
        default_image="python:3.12-slim",
        code_filename="code.py",
        run_template="python {file}",
        install_template="pip install --quiet --no-cache-dir --disable-pip-version-check {packages}",
    ),
    LanguageConfig(
        language="shell",
        default_image="alpine:3.20",
        code_filename="code.sh",
        run_template="sh {file}",
        install_template="apk add --no-cache {packages}",
    ),
    LanguageConfig(
        language="javascript",
        default_image="node:20-alpine",
        code_filename="code.js",
        run_template="node {file}",
        install_template="npm install --no-audit --no-fund --silent {packages}",
    ),
    LanguageConfig(
        language="typescript",
        default_image="node:20-alpine",
        code_filename="code.ts",
        run_template="npx --yes tsx {file}",
        install_template="npm install --no-audit --no-fund --silent {packages}",
    ),
)


class LanguageRegistry:
    """Thread-safe mapping of language identifier to LanguageConfig."""

    def __init__(self, languages: list[LanguageConfig] | None = None) -> None:
        self._languages: dict[str, LanguageConfig] = {}
        self._lock = threading.Lock()
        for config in languages or []:
            self.register(config)

    @classmethod
    def with_defaults(cls) -> LanguageRegistry:
        """Registry preloaded with python, shell, javascript and typescript."""
        return cls(list(DEFAULT_LANGUAGES))

    def register(self, config: LanguageConfig) -> None:
        """Add a language. Replaces any previous config for the same identifier."""
        with self._lock:
            if config.language in self._languages:
                logger.info(f"Replacing language config for '{config.language}'")
            self._languages[config.language] = config

    def unregister(self, language: str) -> bool:
        with self._lock:
            return self._languages.pop(language, None) is not None

    def resolve(self, language: str) -> LanguageConfig:
        """Look up a language.

        Raises:
            UnknownLanguageError: If the language is not registered.
        """
        with self._lock:
            config = self._languages.get(language)
            if config is None:
                raise UnknownLanguageError(language, list(self._languages))
            return config

    def languages(self) -> list[str]:
        with self._lock:
            return sorted(self._languages)

    def __contains__(self, language: object) -> bool:
        with self._lock:
            return language in self._languages


def get_image_for_language(language: str, registry: LanguageRegistry) -> str:
    """Default image of a registered language."""
    return registry.resolve(language).default_image
