#!/usr/bin/env python3
#
# certwarden/utils/fs.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Durable file helpers: atomic replace and locked append."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import IO, Any

__all__ = ["atomic_write", "atomic_write_json", "locked_append"]


@contextlib.contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Generator[IO[str], None, None]:
	"""Context manager for atomic file writes with fsync.

	Yields a file handle for writing. On successful exit, the file is
	fsync'd and atomically moved to the target path.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		with os.fdopen(fd, "w", encoding=encoding) as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)
		# Sync parent directory to ensure the rename is durable
		dir_fd = os.open(str(path.parent), os.O_RDONLY)
		try:
			os.fsync(dir_fd)
		finally:
			os.close(dir_fd)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)


def atomic_write_json(path: Path, data: Any) -> None:
	with atomic_write(path) as f:
		json.dump(data, f, indent=2, sort_keys=True)
		f.write("\n")


def locked_append(path: Path, line: str) -> None:
	"""Append a single line under an exclusive fcntl lock (worker-safe)."""
	path.parent.mkdir(parents=True, exist_ok=True)
	with open(path, "a", encoding="utf-8") as f:
		fcntl.flock(f.fileno(), fcntl.LOCK_EX)
		try:
			f.write(line.rstrip("\n") + "\n")
			f.flush()
		finally:
			fcntl.flock(f.fileno(), fcntl.LOCK_UN)
