"""Tests for dry-run output classification."""

import pytest

from desktop_launcher.core.requirements_check import (
    classify_requirements,
    has_all_packages,
    is_core_upgrade,
    is_manager_upgrade,
)
from desktop_launcher.models.validation import RequirementsStatus

from conftest import MANAGER_UPGRADE_OUTPUT, NO_CHANGES_OUTPUT


CORE_UPGRADE_OUTPUT = (
    "Resolved 50 packages in 35ms\n"
    "Would download 2 packages\n"
    "Would uninstall 1 package\n"
    "Would install 2 packages\n"
    " - aiohttp==3.11.8\n"
    " + aiohttp==3.11.11\n"
    " + yarl==1.18.3\n"
)

UNKNOWN_REMOVAL_OUTPUT = (
    "Resolved 50 packages in 35ms\n"
    "Would uninstall 1 package\n"
    "Would install 1 package\n"
    " - torch==2.5.1\n"
    " + aiohttp==3.11.11\n"
)

UNKNOWN_ADDITION_OUTPUT = (
    "Resolved 50 packages in 35ms\n"
    "Would install 2 packages\n"
    " + aiohttp==3.11.11\n"
    " + numpy==2.1.0\n"
)


# ============================================================================
# TestPredicates
# ============================================================================

class TestHasAllPackages:

    def test_no_changes_phrase(self):
        assert has_all_packages(NO_CHANGES_OUTPUT) is True

    def test_phrase_must_end_the_output(self):
        assert has_all_packages("Would make no changes\n + extra==1.0\n") is False

    def test_install_output(self):
        assert has_all_packages(CORE_UPGRADE_OUTPUT) is False


class TestIsManagerUpgrade:

    @pytest.mark.parametrize("packages", [
        [" + uv==0.5.1"],
        [" + toml==0.10.2", " + uv==0.5.1"],
        [" + chardet==5.2.0", " + toml==0.10.2", " + uv==0.5.1"],
    ])
    def test_allow_listed_packages(self, packages):
        count = len(packages)
        noun = "package" if count == 1 else "packages"
        output = f"Resolved 9 packages in 5ms\nWould install {count} {noun}\n" + "\n".join(packages) + "\n"
        assert is_manager_upgrade(output) is True

    def test_other_package_is_rejected(self):
        output = "Would install 2 packages\n + toml==0.10.2\n + requests==2.32.0\n"
        assert is_manager_upgrade(output) is False

    def test_four_packages_is_rejected(self):
        output = (
            "Would install 4 packages\n + toml==0.10.2\n + uv==0.5.1\n"
            " + chardet==5.2.0\n + toml==0.10.3\n"
        )
        assert is_manager_upgrade(output) is False


class TestIsCoreUpgrade:

    def test_known_upgrade(self):
        assert is_core_upgrade(CORE_UPGRADE_OUTPUT) is True

    def test_unknown_removal_is_rejected(self):
        assert is_core_upgrade(UNKNOWN_REMOVAL_OUTPUT) is False

    def test_unknown_addition_is_rejected(self):
        assert is_core_upgrade(UNKNOWN_ADDITION_OUTPUT) is False

    def test_requires_an_addition(self):
        assert is_core_upgrade("Would uninstall 1 package\n - aiohttp==3.11.8\n") is False


# ============================================================================
# TestClassifyRequirements
# ============================================================================

class TestClassifyRequirements:

    def test_both_ok(self):
        assert classify_requirements(NO_CHANGES_OUTPUT, NO_CHANGES_OUTPUT) == RequirementsStatus.OK

    def test_manager_upgrade_with_core_ok(self):
        result = classify_requirements(NO_CHANGES_OUTPUT, MANAGER_UPGRADE_OUTPUT)
        assert result == RequirementsStatus.PACKAGE_UPGRADE

    def test_core_upgrade_with_manager_ok(self):
        result = classify_requirements(CORE_UPGRADE_OUTPUT, NO_CHANGES_OUTPUT)
        assert result == RequirementsStatus.PACKAGE_UPGRADE

    def test_both_upgrades(self):
        result = classify_requirements(CORE_UPGRADE_OUTPUT, MANAGER_UPGRADE_OUTPUT)
        assert result == RequirementsStatus.PACKAGE_UPGRADE

    def test_unknown_removal_is_error(self):
        result = classify_requirements(UNKNOWN_REMOVAL_OUTPUT, NO_CHANGES_OUTPUT)
        assert result == RequirementsStatus.ERROR

    def test_unrecognised_manager_change_is_error(self):
        manager = "Would install 1 package\n + requests==2.32.0\n"
        assert classify_requirements(NO_CHANGES_OUTPUT, manager) == RequirementsStatus.ERROR

    def test_core_upgrade_with_unrecognised_manager_change_is_error(self):
        manager = "Would install 1 package\n + requests==2.32.0\n"
        assert classify_requirements(CORE_UPGRADE_OUTPUT, manager) == RequirementsStatus.ERROR
