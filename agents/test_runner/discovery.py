"""Test Discovery – inspects a repository's manifest files and returns the
command needed to run its test suite (plus the command that installs its
dependencies).

Detection order
───────────────
1. ``package.json``   – npm script, jest, vitest, mocha
2. Python manifests   – ``pyproject.toml`` / ``setup.py`` / ``requirements.txt``
3. ``go.mod``         – go test
4. ``Cargo.toml``     – cargo test
5. ``pom.xml`` / ``build.gradle(.kts)`` – maven / gradle
6. fallback           – ``npm test``

Usage::

    from agents.test_runner.discovery import detect_test_command

    cmd = detect_test_command("/path/to/repo")
    # TestCommand(command="python -m pytest -v", install_command="pip install -r requirements.txt", ...)

Detection is pure: it only reads files.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# What ``npm init`` writes when the author never configured tests.
NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'


# ── Result dataclass ─────────────────────────────────────────────────

@dataclass
class TestCommand:
    """The detected test command for one repository."""

    __test__ = False  # not a pytest class

    command: str
    install_command: str | None
    framework: str                     # e.g. "npm", "jest", "pytest", "go"
    evidence: list[str] = field(default_factory=list)  # why we think so

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "install_command": self.install_command,
            "framework": self.framework,
            "evidence": self.evidence,
        }


# ── Public API ───────────────────────────────────────────────────────

def detect_test_command(repo_dir: str | Path) -> TestCommand:
    """Return the test command for the repository at *repo_dir*."""
    root = Path(repo_dir)

    detectors = (
        _detect_node,
        _detect_python,
        _detect_go,
        _detect_rust,
        _detect_jvm,
    )
    for detector in detectors:
        match = detector(root)
        if match is not None:
            logger.info(
                "Detected %s in %s: %s (%s)",
                match.framework, root, match.command, "; ".join(match.evidence),
            )
            return match

    logger.info("No known manifest in %s, falling back to npm test", root)
    return TestCommand(
        command="npm test",
        install_command="npm install",
        framework="unknown",
        evidence=["no recognised manifest"],
    )


# ── Detectors ────────────────────────────────────────────────────────

def _read_package_json(root: Path) -> dict[str, Any] | None:
    pkg_path = root / "package.json"
    if not pkg_path.is_file():
        return None
    try:
        data = json.loads(pkg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Skipping unreadable package.json in %s: %s", root, exc)
        return None
    return data if isinstance(data, dict) else None


def _detect_node(root: Path) -> TestCommand | None:
    pkg = _read_package_json(root)
    if pkg is None:
        return None

    scripts = pkg.get("scripts") or {}
    test_script = scripts.get("test") if isinstance(scripts, dict) else None

    if test_script and test_script != NPM_PLACEHOLDER_TEST:
        return TestCommand(
            command="npm test",
            install_command="npm install",
            framework="npm",
            evidence=[f"package.json scripts.test = {test_script!r}"],
        )

    deps: dict[str, Any] = {}
    for section in ("dependencies", "devDependencies"):
        if isinstance(pkg.get(section), dict):
            deps.update(pkg[section])

    if "jest" in deps or "@jest/core" in deps:
        return TestCommand(
            command="npx jest --no-cache --forceExit",
            install_command="npm install",
            framework="jest",
            evidence=["jest in package.json dependencies"],
        )
    if "vitest" in deps:
        return TestCommand(
            command="npx vitest run",
            install_command="npm install",
            framework="vitest",
            evidence=["vitest in package.json dependencies"],
        )
    if "mocha" in deps:
        return TestCommand(
            command="npx mocha",
            install_command="npm install",
            framework="mocha",
            evidence=["mocha in package.json dependencies"],
        )

    # Even the placeholder beats guessing.
    if test_script:
        return TestCommand(
            command="npm test",
            install_command="npm install",
            framework="npm",
            evidence=["package.json has only the placeholder test script"],
        )
    return None


def _detect_python(root: Path) -> TestCommand | None:
    manifests = [
        name for name in ("pyproject.toml", "setup.py", "requirements.txt")
        if (root / name).is_file()
    ]
    if not manifests:
        return None

    if (root / "requirements.txt").is_file():
        install = "pip install -r requirements.txt"
    else:
        install = "pip install -e ."

    return TestCommand(
        command="python -m pytest -v",
        install_command=install,
        framework="pytest",
        evidence=[f"found {name}" for name in manifests],
    )


def _detect_go(root: Path) -> TestCommand | None:
    if not (root / "go.mod").is_file():
        return None
    return TestCommand(
        command="go test ./...",
        install_command=None,
        framework="go",
        evidence=["found go.mod"],
    )


def _detect_rust(root: Path) -> TestCommand | None:
    if not (root / "Cargo.toml").is_file():
        return None
    return TestCommand(
        command="cargo test",
        install_command=None,
        framework="cargo",
        evidence=["found Cargo.toml"],
    )


def _detect_jvm(root: Path) -> TestCommand | None:
    if (root / "pom.xml").is_file():
        return TestCommand(
            command="mvn test",
            install_command=None,
            framework="maven",
            evidence=["found pom.xml"],
        )

    for build_file in ("build.gradle", "build.gradle.kts"):
        if (root / build_file).is_file():
            has_wrapper = (root / "gradlew").is_file()
            return TestCommand(
                command="./gradlew test" if has_wrapper else "gradle test",
                install_command=None,
                framework="gradle",
                evidence=[f"found {build_file}"] + (["found gradlew"] if has_wrapper else []),
            )
    return None
