"""Static-analysis lookups used by agent tools (symbols, interfaces, dependencies)."""

from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Protocol

import libcst as cst
from libcst import metadata

LOGGER = logging.getLogger(__name__)

_SKIP_DIRS = {".git", ".venv", "venv", "node_modules", "__pycache__", "build", "dist", ".patchloop", ".tox"}
_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


@dataclass(slots=True)
class ClassSymbol:
    name: str
    visibility: str
    line: int
    methods: List[str] = field(default_factory=list)
    properties: List[str] = field(default_factory=list)
    constructors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SymbolResult:
    namespace: str
    classes: List[ClassSymbol] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)


@dataclass(slots=True)
class InterfaceResult:
    name: str
    path: str
    methods: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DependencyRegistration:
    name: str
    specifier: str
    source: str


class StaticAnalyzer(Protocol):
    """Read-only structural lookups over a repository."""

    def symbols(self, path: Path, repo_root: Path) -> SymbolResult:  # pragma: no cover - protocol
        ...

    def interface(self, name: str, repo_root: Path) -> Optional[InterfaceResult]:  # pragma: no cover - protocol
        ...

    def dependencies(self, repo_root: Path) -> List[DependencyRegistration]:  # pragma: no cover - protocol
        ...


def _visibility(name: str) -> str:
    if name.startswith("__") and name.endswith("__"):
        return "public"
    if name.startswith("_"):
        return "private"
    return "public"


class _ClassCollector(cst.CSTVisitor):
    METADATA_DEPENDENCIES = (metadata.PositionProvider,)

    def __init__(self, module: cst.Module) -> None:
        self._module = module
        self._stack: List[ClassSymbol] = []
        self._depth = 0
        self.classes: List[ClassSymbol] = []
        self.functions: List[str] = []

    def _signature(self, node: cst.FunctionDef) -> str:
        signature = f"{node.name.value}({self._module.code_for_node(node.params)})"
        if node.returns is not None:
            signature = f"{signature} -> {self._module.code_for_node(node.returns.annotation)}"
        if node.asynchronous is not None:
            signature = f"async {signature}"
        return signature

    def visit_ClassDef(self, node: cst.ClassDef) -> None:
        position = self.get_metadata(metadata.PositionProvider, node)
        symbol = ClassSymbol(name=node.name.value, visibility=_visibility(node.name.value), line=position.start.line)
        if self._stack:
            symbol.name = f"{self._stack[-1].name}.{symbol.name}"
        self.classes.append(symbol)
        self._stack.append(symbol)

    def leave_ClassDef(self, original_node: cst.ClassDef) -> None:
        self._stack.pop()

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        name = node.name.value
        if not self._stack:
            if self._depth == 0:
                self.functions.append(self._signature(node))
            self._depth += 1
            return True
        owner = self._stack[-1]
        decorators = {self._module.code_for_node(item.decorator) for item in node.decorators}
        if name in {"__init__", "__new__"}:
            owner.constructors.append(self._signature(node))
        elif "property" in decorators or any(item.endswith((".setter", ".getter")) for item in decorators):
            if name not in owner.properties:
                owner.properties.append(name)
        else:
            owner.methods.append(self._signature(node))
        # Nested helpers inside methods are not members.
        return False

    def leave_FunctionDef(self, original_node: cst.FunctionDef) -> None:
        if not self._stack and self._depth:
            self._depth -= 1

    def visit_AnnAssign(self, node: cst.AnnAssign) -> None:
        if self._stack and isinstance(node.target, cst.Name):
            if node.target.value not in self._stack[-1].properties:
                self._stack[-1].properties.append(node.target.value)


def _module_namespace(path: Path, repo_root: Path) -> str:
    try:
        relative = path.resolve().relative_to(repo_root.resolve())
    except ValueError:
        relative = Path(path.name)
    parts = list(relative.with_suffix("").parts)
    if parts and parts[0] == "src":
        parts = parts[1:]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def _iter_python_files(repo_root: Path) -> Iterator[Path]:
    for path in sorted(repo_root.rglob("*.py")):
        if any(part in _SKIP_DIRS for part in path.relative_to(repo_root).parts):
            continue
        yield path


class PythonAnalyzer:
    """libcst-backed :class:`StaticAnalyzer` for Python repositories."""

    def _parse(self, path: Path) -> tuple[cst.Module, _ClassCollector]:
        source = path.read_text(encoding="utf-8")
        module = cst.parse_module(source)
        wrapper = metadata.MetadataWrapper(module)
        collector = _ClassCollector(wrapper.module)
        wrapper.visit(collector)
        return wrapper.module, collector

    def symbols(self, path: Path, repo_root: Path) -> SymbolResult:
        """Return the module namespace, its classes and top-level functions."""
        try:
            _, collector = self._parse(path)
        except cst.ParserSyntaxError as error:
            raise ValueError(f"{path.name} does not parse: {error.message}") from error
        return SymbolResult(
            namespace=_module_namespace(path, repo_root),
            classes=collector.classes,
            functions=collector.functions,
        )

    def interface(self, name: str, repo_root: Path) -> Optional[InterfaceResult]:
        """Find class ``name`` and list its public method signatures."""
        needle = re.compile(rf"^\s*class\s+{re.escape(name)}\b", re.MULTILINE)
        for path in _iter_python_files(repo_root):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            if not needle.search(text):
                continue
            try:
                _, collector = self._parse(path)
            except cst.ParserSyntaxError as error:
                LOGGER.debug("Skipping unparsable %s: %s", path, error)
                continue
            for symbol in collector.classes:
                if symbol.name.split(".")[-1] != name:
                    continue
                methods = [
                    signature
                    for signature in symbol.constructors + symbol.methods
                    if _visibility(signature.removeprefix("async ").split("(", 1)[0]) == "public"
                ]
                return InterfaceResult(
                    name=symbol.name,
                    path=path.relative_to(repo_root).as_posix(),
                    methods=methods + [f"property {prop}" for prop in symbol.properties],
                )
        return None

    def dependencies(self, repo_root: Path) -> List[DependencyRegistration]:
        """Declared requirements from pyproject.toml and requirements*.txt."""
        registrations: list[DependencyRegistration] = []
        pyproject = repo_root / "pyproject.toml"
        if pyproject.is_file():
            try:
                data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            except (OSError, tomllib.TOMLDecodeError) as error:
                LOGGER.warning("Unable to read %s: %s", pyproject, error)
                data = {}
            project = data.get("project") or {}
            for spec in project.get("dependencies") or []:
                registrations.append(self._registration(spec, "pyproject.toml"))
            for extra, specs in (project.get("optional-dependencies") or {}).items():
                for spec in specs:
                    registrations.append(self._registration(spec, f"pyproject.toml[{extra}]"))
        for requirements in sorted(repo_root.glob("requirements*.txt")):
            try:
                lines = requirements.read_text(encoding="utf-8").splitlines()
            except OSError:
                continue
            for line in lines:
                stripped = line.split("#", 1)[0].strip()
                if not stripped or stripped.startswith("-"):
                    continue
                registrations.append(self._registration(stripped, requirements.name))
        return registrations

    @staticmethod
    def _registration(spec: str, source: str) -> DependencyRegistration:
        match = _REQUIREMENT_NAME.match(spec)
        name = match.group(1) if match else spec.strip()
        return DependencyRegistration(name=name, specifier=spec.strip(), source=source)


__all__ = [
    "ClassSymbol",
    "DependencyRegistration",
    "InterfaceResult",
    "PythonAnalyzer",
    "StaticAnalyzer",
    "SymbolResult",
]
