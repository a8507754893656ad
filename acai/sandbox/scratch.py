from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

from acai.constants import SCRATCH_DIR_PREFIX, SCRATCH_SCRIPT_PREFIX

logger = structlog.get_logger()


@asynccontextmanager
async def scratch_script(
    source: str, working_dir: Path, *, suffix: str = ".py"
) -> AsyncIterator[Path]:
    """Write source to a fresh file inside a fresh directory under working_dir.

    The directory and everything in it are removed when the block exits,
    whether it returns, raises or is cancelled.
    """
    scratch_dir = Path(tempfile.mkdtemp(prefix=SCRATCH_DIR_PREFIX, dir=working_dir))
    try:
        fd, name = tempfile.mkstemp(prefix=SCRATCH_SCRIPT_PREFIX, suffix=suffix, dir=scratch_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(source)
        logger.debug("scratch_script_created", path=name)
        yield Path(name)
    finally:
        try:
            shutil.rmtree(scratch_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("scratch_cleanup_failed", path=str(scratch_dir))
