"""Repository-level integrity checks for packaging and layout."""

from __future__ import annotations

import re
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SOURCE_ROOTS = ("app", "reelkeeper")
SOURCE_SUFFIXES = {".py", ".toml", ".cfg", ".ini"}
CONFLICT_PATTERN = re.compile(r"^(<<<<<<<|=======|>>>>>>>)", re.MULTILINE)
IMPORT_PATTERN = re.compile(r"^\s*(?:from|import)\s+([A-Za-z_][A-Za-z0-9_]*)", re.MULTILINE)
IGNORED_PARTS = {".git", "__pycache__", ".mypy_cache", ".pytest_cache", ".venv"}

# Import name -> distribution name where the two differ.
DISTRIBUTION_NAMES = {"pydantic_settings": "pydantic-settings"}


def _pyproject() -> str:
    return (REPO_ROOT / "pyproject.toml").read_text(encoding="utf-8")


def _declared_list(name: str) -> list[str]:
    match = re.search(rf"^{name}\s*=\s*\[(.*?)\]", _pyproject(), re.MULTILINE | re.DOTALL)
    assert match, f"pyproject.toml has no {name} list"
    return re.findall(r'"([^"]+)"', match.group(1))


def _source_files() -> list[Path]:
    files: list[Path] = []
    for root in SOURCE_ROOTS:
        for path in (REPO_ROOT / root).rglob("*.py"):
            if not any(part in IGNORED_PARTS for part in path.parts):
                files.append(path)
    return files


def test_repository_has_no_merge_conflict_markers() -> None:
    """Ensure no source or packaging file still contains git conflict markers."""

    offending_files: list[Path] = []

    for path in REPO_ROOT.rglob("*"):
        if not path.is_file() or path.suffix not in SOURCE_SUFFIXES:
            continue
        if any(part in IGNORED_PARTS for part in path.parts):
            continue

        contents = path.read_text(encoding="utf-8", errors="ignore")
        if CONFLICT_PATTERN.search(contents):
            offending_files.append(path.relative_to(REPO_ROOT))

    assert not offending_files, (
        "The following files still contain git conflict markers: "
        + ", ".join(str(path) for path in offending_files)
    )


def test_every_source_package_is_packaged() -> None:
    declared = set(_declared_list("packages"))
    on_disk = {
        ".".join(path.parent.relative_to(REPO_ROOT).parts) for path in _source_files()
    }

    assert on_disk <= declared, f"Unpackaged source directories: {sorted(on_disk - declared)}"


def test_services_stay_a_namespace_package() -> None:
    assert (REPO_ROOT / "app" / "__init__.py").is_file()
    assert (REPO_ROOT / "reelkeeper" / "__main__.py").is_file()
    assert not (REPO_ROOT / "app" / "services" / "__init__.py").exists()


def test_third_party_imports_are_declared() -> None:
    declared = {
        re.split(r"[\[<>=!~ ]", requirement, maxsplit=1)[0].lower()
        for requirement in _declared_list("dependencies")
    }
    local = set(SOURCE_ROOTS)
    missing: dict[str, str] = {}

    for path in _source_files():
        for name in IMPORT_PATTERN.findall(path.read_text(encoding="utf-8")):
            if name in local or name in sys.stdlib_module_names or name == "__future__":
                continue
            distribution = DISTRIBUTION_NAMES.get(name, name).lower()
            if distribution not in declared:
                missing[name] = str(path.relative_to(REPO_ROOT))

    assert not missing, f"Imports without a declared dependency: {missing}"


def test_console_script_targets_shim_package() -> None:
    assert re.search(
        r'^reelkeeper\s*=\s*"reelkeeper\.__main__:main"', _pyproject(), re.MULTILINE
    )
