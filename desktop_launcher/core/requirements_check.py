"""Classification of ``uv pip install --dry-run`` output.

The installer's dry-run text is the only signal of drift, so recognition is
deliberately narrow: anything not matched by a known pattern is an error,
which routes the user to the repair UI instead of silently reinstalling.
"""

from __future__ import annotations

import logging
import re

from desktop_launcher.models.validation import RequirementsStatus

logger = logging.getLogger(__name__)

NO_CHANGES = re.compile(r"\bWould make no changes\s+$")

# Manager plugin self-upgrades: uv + toml, or chardet, in any combination
MANAGER_UPGRADE_PACKAGES = ('toml', 'uv', 'chardet')
_MANAGER_UPGRADE = re.compile(
    r"\bWould install [1-3] packages?(\s+\+ (" + "|".join(MANAGER_UPGRADE_PACKAGES) + r")==[\d.]+){1,3}\s*$"
)

# Core dependency bumps that are safe to apply without a full reinstall
CORE_UPGRADE_PACKAGES = (
    'aiohttp',
    'av',
    'yarl',
    'comfyui-workflow-templates',
    'comfyui-embedded-docs',
    'pydantic',
    'pydantic-core',
    'pydantic-settings',
    'annotated-types',
    'typing-inspection',
    'alembic',
    'sqlalchemy',
    'greenlet',
    'mako',
    'python-dotenv',
)
_CORE_NAMES = "|".join(re.escape(p) for p in CORE_UPGRADE_PACKAGES)
_UNKNOWN_REMOVAL = re.compile(r"^\s*- (?!" + _CORE_NAMES + r").*==")
_ANY_ADDITION = re.compile(r"^\s*\+ ")
_KNOWN_ADDITION = re.compile(r"^\s*\+ (" + _CORE_NAMES + r")==")


def has_all_packages(output: str) -> bool:
    ok = NO_CHANGES.search(output) is not None
    if not ok:
        logger.warning(output)
    return ok


def is_manager_upgrade(output: str) -> bool:
    return _MANAGER_UPGRADE.search(output) is not None


def is_core_upgrade(output: str) -> bool:
    adds = 0
    for line in output.split("\n"):
        # Reject upgrade if removing an unrecognised package
        if _UNKNOWN_REMOVAL.search(line):
            return False
        if _ANY_ADDITION.search(line):
            if not _KNOWN_ADDITION.search(line):
                return False
            adds += 1
    return adds > 0


def classify_requirements(core_output: str, manager_output: str) -> RequirementsStatus:
    """Combine the core and manager dry-run outputs into one status."""
    core_ok = has_all_packages(core_output)
    manager_ok = has_all_packages(manager_output)

    upgrade_core = not core_ok and is_core_upgrade(core_output)
    upgrade_manager = not manager_ok and is_manager_upgrade(manager_output)

    if (manager_ok and upgrade_core) or (core_ok and upgrade_manager) or (upgrade_core and upgrade_manager):
        logger.info(
            "Package update of known packages required. Core: %s Manager: %s",
            upgrade_core,
            upgrade_manager,
        )
        return RequirementsStatus.PACKAGE_UPGRADE

    return RequirementsStatus.OK if core_ok and manager_ok else RequirementsStatus.ERROR
