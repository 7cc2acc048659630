# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Source scanner building the file manifest of a repository.

This module walks a repository root and produces SourceFile manifest entries:
- Extension-based language detection (any language with a known extension,
  analyzed or not; unanalyzed ones become opaque file entities)
- Hardcoded ignore patterns for dependency and build directories
- Sensitive files (keys, credentials) are never read
- .gitignore and user-configured ignore patterns

Paths in the manifest are repository-relative and use forward slashes, so
entity identifiers are identical across platforms and checkouts.
"""

import fnmatch
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Set, Union

from codegraph_engine.models import SourceFile

logger = logging.getLogger(__name__)


class SourceScanner:
    """Finds analyzable files under a repository root.

    Usage:
        scanner = SourceScanner("/path/to/repo", extension_map=registry.extension_map())
        manifest = scanner.manifest()
    """

    # Hardcoded ignore patterns
    ALWAYS_IGNORED = {
        ".git",
        "__pycache__",
        ".venv",
        "venv",
        "env",
        "node_modules",
        ".tox",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".eggs",
        "*.egg-info",
        "dist",
        "build",
    }

    # Sensitive files that should never be read
    SENSITIVE_PATTERNS = {
        ".env",
        ".env.*",
        "credentials.json",
        "*.key",
        "*.pem",
        "*.p12",
        "*.pfx",
        "*_key",
        "*_secret",
        "*.jks",  # Java keystores
        "*.keystore",
        "*.truststore",
        "*.cer",
        "*.crt",
        "id_rsa",
        "id_dsa",
        "id_ecdsa",
        "id_ed25519",  # SSH private keys
        "secrets.yaml",
        "secrets.yml",
        ".npmrc",
        ".pypirc",  # Package manager credentials
        "gcloud.json",
        ".aws",  # AWS credentials directory
    }

    DEFAULT_EXTENSIONS = {
        ".py": "python",
        ".pyi": "python",
    }

    def __init__(
        self,
        root: Union[str, Path],
        ignore_patterns: Optional[Iterable[str]] = None,
        extension_map: Optional[Dict[str, str]] = None,
        gitignore_path: Optional[Union[str, Path]] = None,
    ):
        """Initialize SourceScanner.

        Args:
            root: Repository root directory.
            ignore_patterns: Additional user-configured ignore patterns.
            extension_map: File extension -> language (default: Python only).
            gitignore_path: Path to .gitignore file (defaults to {root}/.gitignore).
        """
        self.root = Path(root).resolve()
        self.gitignore_path = Path(gitignore_path) if gitignore_path else self.root / ".gitignore"
        self.user_ignore_patterns: Set[str] = set(ignore_patterns or ())
        self.extension_map: Dict[str, str] = {
            extension.lower(): language
            for extension, language in (extension_map or self.DEFAULT_EXTENSIONS).items()
        }
        self._gitignore_patterns: Set[str] = self._load_gitignore()

    def _load_gitignore(self) -> Set[str]:
        """Load and parse .gitignore patterns with validation.

        Pattern validation:
        - Maximum length: 1000 characters (prevents pathological patterns)
        - Empty lines and comments are skipped
        - A trailing slash is dropped (directory patterns match path parts)
        """
        patterns: Set[str] = set()

        if not self.gitignore_path.exists():
            logger.debug(f"No .gitignore found at {self.gitignore_path}")
            return patterns

        try:
            with open(self.gitignore_path, encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue

                    if len(line) > 1000:
                        logger.warning(
                            f".gitignore line {line_num}: Pattern too long (>1000 chars), skipping"
                        )
                        continue

                    patterns.add(line.rstrip("/") or line)

            logger.debug(f"Loaded {len(patterns)} patterns from .gitignore")
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"Failed to load .gitignore: {e}")
        except UnicodeDecodeError as e:
            logger.error(f"Failed to decode .gitignore (encoding error): {e}")
        except OSError as e:
            logger.error(f"Failed to read .gitignore: {e}")

        return patterns

    def relative_path(self, file_path: Union[str, Path]) -> Optional[str]:
        """Repository-relative POSIX path, or None when outside the root."""
        path = Path(file_path)
        if not path.is_absolute():
            path = self.root / path
        try:
            rel = Path(os.path.normpath(path)).relative_to(self.root)
        except ValueError:
            return None
        rel_str = rel.as_posix()
        if rel_str in ("", ".") or rel_str.startswith("../"):
            return None
        return rel_str

    @staticmethod
    def _matches_pattern(path: PurePosixPath, rel_path_str: str, pattern: str) -> bool:
        """Check if a relative path matches a single pattern.

        Wildcard patterns are matched against the full relative path, the file
        name and every path component; plain names against file name and
        components.
        """
        if pattern.startswith("*") or pattern.endswith("*"):
            if fnmatch.fnmatch(rel_path_str, pattern) or fnmatch.fnmatch(path.name, pattern):
                return True
            return any(fnmatch.fnmatch(part, pattern) for part in path.parts)
        return path.name == pattern or pattern in path.parts

    def should_ignore(self, file_path: Union[str, Path]) -> bool:
        """Check if a file (or directory) should be ignored.

        Pattern matching strategy:
        - ALWAYS_IGNORED & SENSITIVE_PATTERNS: path parts and file name
        - .gitignore and user patterns: relative path, file name and path
          parts (so "docs" and "docs/" exclude the whole directory)

        Paths outside the root are always ignored.
        """
        rel_path_str = self.relative_path(file_path)
        if rel_path_str is None:
            return True
        path = PurePosixPath(rel_path_str)

        for pattern in self.ALWAYS_IGNORED:
            if self._matches_pattern(path, rel_path_str, pattern):
                return True

        for pattern in self.SENSITIVE_PATTERNS:
            if self._matches_pattern(path, rel_path_str, pattern):
                logger.debug(f"Ignoring sensitive file/directory: {path.name}")
                return True

        for pattern in self._gitignore_patterns | self.user_ignore_patterns:
            if fnmatch.fnmatch(rel_path_str, pattern.lstrip("/")) or self._matches_pattern(
                path, rel_path_str, pattern
            ):
                return True

        return False

    def language_for(self, file_path: Union[str, Path]) -> Optional[str]:
        """Language identifier for a file extension, None when unknown."""
        return self.extension_map.get(Path(file_path).suffix.lower())

    def classify(self, file_path: Union[str, Path]) -> Optional[str]:
        """Language of a file that belongs in the manifest, None otherwise."""
        if self.should_ignore(file_path):
            return None
        return self.language_for(file_path)

    def scan(self) -> List[str]:
        """Relative paths of every manifest file under the root, sorted."""
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(
                d for d in dirnames if not self.should_ignore(os.path.join(dirpath, d))
            )
            for filename in filenames:
                full_path = os.path.join(dirpath, filename)
                if self.classify(full_path) is None:
                    continue
                rel_path = self.relative_path(full_path)
                if rel_path is not None:
                    found.append(rel_path)
        found.sort()
        logger.debug(f"Scanned {self.root}: {len(found)} file(s)")
        return found

    def load(self, rel_path: str) -> Optional[SourceFile]:
        """Read one file into a manifest entry, None if it cannot be read."""
        full_path = self.root / rel_path
        try:
            content = full_path.read_bytes()
            mtime = full_path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"⚠️ Cannot read {rel_path}: {e}")
            return None
        return SourceFile(
            path=rel_path,
            content=content,
            language=self.language_for(rel_path),
            mtime=mtime,
        )

    def manifest(self) -> List[SourceFile]:
        """Load every scanned file."""
        sources = []
        for rel_path in self.scan():
            source = self.load(rel_path)
            if source is not None:
                sources.append(source)
        return sources
