"""Project-wide constants shared by config, sandbox and tools."""

from __future__ import annotations

# Project-level config file, relative to the working directory.
PROJECT_CONFIG_PATH = ".acai/acai.json"

# Per-run scratch directories for the code interpreter live directly under the
# working tree and are removed after every run.
SCRATCH_DIR_PREFIX = ".acai-ci-"
SCRATCH_SCRIPT_PREFIX = "temp_script_"

# Hard upper bound for code interpreter runs; settings and the tool schema share it.
CODE_TIMEOUT_CEILING_S = 60

# Truncation notices must always fit under the effective token ceiling.
MIN_TOKEN_LIMIT = 256
