#!/usr/bin/env python3
"""repacker constructor generator.

Input:  a source package directory and a destination package directory, each
        holding annotated record classes (dataclasses, NamedTuples, ...).
Output: `<dsttype>_repack.py` in the destination directory, defining
        `New<DstType>(s)` which builds the destination record from the source.
"""

from __future__ import annotations

import argparse
import ast
import builtins
import dataclasses
import pathlib
import re
import sys
from typing import Callable, Dict, List, Sequence, Tuple

GENERATOR_NAME = "repacker"
TAG_KEY = "repack"
OUTPUT_SUFFIX = "_repack.py"
STRING_TYPE = "str"
TAG_PATTERN = re.compile(r'([0-9a-zA-Z,_=&()\-]+)(:( )?"([0-9a-zA-Z,_=&()\-]*)")?')
TOP_LEVEL_DEF = re.compile(r"^(def |async def |class |@)")

COERCION_NONE = "none"
COERCION_STRING_FORMAT = "string_format"
SKIP_NO_MATCH = "no matching field"
SKIP_TYPE_MISMATCH = "type mismatch"

BUILTIN_TYPES = frozenset(name for name, value in vars(builtins).items() if isinstance(value, type))
TYPING_CANONICAL = {
    "typing.Dict": "dict",
    "typing.FrozenSet": "frozenset",
    "typing.List": "list",
    "typing.Set": "set",
    "typing.Text": "str",
    "typing.Tuple": "tuple",
    "typing.Type": "type",
}
TRANSPARENT_QUALIFIERS = frozenset(
    {"typing.Annotated", "typing.Final", "typing.NotRequired", "typing.ReadOnly", "typing.Required"}
)
NON_FIELD_QUALIFIERS = ("typing.ClassVar", "dataclasses.InitVar", "dataclasses.KW_ONLY")
NAMED_TYPE_FACTORIES = frozenset({"typing.NewType", "typing.TypeVar"})
FIELD_FACTORIES = frozenset(
    {"attr.attrib", "attr.field", "attr.ib", "attrs.field", "dataclasses.field", "pydantic.Field"}
)
RECORD_DECORATORS = frozenset(
    {
        "attr.attrs",
        "attr.define",
        "attr.frozen",
        "attr.mutable",
        "attr.s",
        "attrs.define",
        "attrs.frozen",
        "attrs.mutable",
        "dataclasses.dataclass",
        "pydantic.dataclasses.dataclass",
    }
)
# Bases that contribute no keyword constructor
PLAIN_BASES = frozenset({"abc.ABC", "object", "typing.Generic", "typing.Protocol"})
TYPE_EXPRESSION_NODES = (ast.Attribute, ast.BinOp, ast.Constant, ast.Name, ast.Subscript)


class RepackError(RuntimeError):
    pass


class ConfigError(RepackError):
    pass


class LoadError(RepackError):
    def __init__(self, message: str, path: pathlib.Path | None = None, line: int = 0, col: int = 0) -> None:
        super().__init__(message)
        self.path = path
        self.line = line
        self.col = col

    def location(self) -> str:
        if self.path is None:
            return ""
        if self.line <= 0:
            return str(self.path)
        return f"{self.path}:{self.line}:{self.col}"


class TypeLookupError(RepackError, LookupError):
    pass


class FormatError(RepackError):
    pass


class WriteError(RepackError):
    pass


@dataclasses.dataclass(frozen=True)
class TypeRef:
    display: str

    def __str__(self) -> str:
        return self.display


@dataclasses.dataclass
class FieldDescriptor:
    name: str
    type: TypeRef
    raw_tag: str = ""
    has_default: bool = False


@dataclasses.dataclass(frozen=True)
class NormalizedTag:
    key: str
    name: str
    options: Tuple[str, ...] = ()


@dataclasses.dataclass
class RecordType:
    name: str
    package: str
    module: str
    fields: List[FieldDescriptor] = dataclasses.field(default_factory=list)
    keyword_init: bool = True


@dataclasses.dataclass
class ModuleScope:
    name: str
    path: pathlib.Path
    tree: ast.Module
    imports: Dict[str, str] = dataclasses.field(default_factory=dict)
    classes: Dict[str, ast.ClassDef] = dataclasses.field(default_factory=dict)
    aliases: Dict[str, ast.expr] = dataclasses.field(default_factory=dict)
    named_types: set[str] = dataclasses.field(default_factory=set)
    values: set[str] = dataclasses.field(default_factory=set)
    star_imports: List[str] = dataclasses.field(default_factory=list)

    def defines(self, name: str) -> bool:
        return (
            name in self.classes
            or name in self.aliases
            or name in self.named_types
            or name in self.imports
            or name in self.values
        )


@dataclasses.dataclass
class Package:
    name: str
    directory: pathlib.Path
    has_init: bool
    modules: Dict[str, ModuleScope] = dataclasses.field(default_factory=dict)
    class_modules: Dict[str, ModuleScope] = dataclasses.field(default_factory=dict)
    records: Dict[str, RecordType] = dataclasses.field(default_factory=dict)

    def lookup(self, name: str) -> RecordType:
        record = self.records.get(name)
        if record is None:
            raise TypeLookupError(f"{name} not found in package {self.name} ({self.directory})")
        return record

    def import_path(self, module: str) -> str:
        if not self.has_init:
            return module
        if module == "__init__":
            return self.name
        return f"{self.name}.{module}"

    def type_path(self, module: str, name: str) -> str:
        """Display name of a class or named type declared in `module`."""
        return f"{self.import_path(module)}.{name}"


@dataclasses.dataclass
class MappingDecision:
    destination: FieldDescriptor
    source: FieldDescriptor | None = None
    coercion: str = COERCION_NONE  # none | string_format
    skipped_reason: str | None = None

    @property
    def mapped(self) -> bool:
        return self.source is not None and self.skipped_reason is None


@dataclasses.dataclass
class ConstructorSpec:
    source_package: str
    source_type: str
    destination_package: str
    destination_type: str
    source_ref: str = ""
    imports: List[str] = dataclasses.field(default_factory=list)
    decisions: List[MappingDecision] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class Config:
    target_dir: pathlib.Path
    src_dir: pathlib.Path
    src_type: str
    dst_type: str
    argv: Tuple[str, ...] = ()
    check: bool = False

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


def report(message: str) -> None:
    print(f"{GENERATOR_NAME}: {message}", file=sys.stderr)


def fail(error: RepackError) -> int:
    if isinstance(error, LoadError) and error.path is not None:
        print(f"{error.location()}: error: {error}", file=sys.stderr)
    else:
        report(str(error))
    return 1


# Tag parsing


def parse_tag(raw_tag: str) -> Dict[str, NormalizedTag]:
    tags: Dict[str, NormalizedTag] = {}
    for match in TAG_PATTERN.finditer(raw_tag):
        key, pair, _, value = match.groups()
        if pair is None or key in tags:
            continue
        name, *options = value.split(",")
        tags[key] = NormalizedTag(key=key, name=name, options=tuple(options))
    return tags


def lookup_tag(raw_tag: str, key: str = TAG_KEY) -> Tuple[str, bool]:
    """Return the value stored under `key` and whether the key is present at all."""
    tag = parse_tag(raw_tag).get(key)
    if tag is None:
        return "", False
    return ",".join((tag.name,) + tag.options), True


# Type catalog


def split_top_level(text: str, separator: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "[(":
            depth += 1
        elif ch in "])":
            depth -= 1
        elif depth == 0 and text.startswith(separator, i):
            parts.append(text[start:i])
            i += len(separator)
            start = i
            continue
        i += 1
    parts.append(text[start:])
    return parts


def join_union(parts: Sequence[str]) -> str:
    members: List[str] = []
    for part in parts:
        for member in split_top_level(part, " | "):
            if member not in members:
                members.append(member)
    return " | ".join(members)


def canonical_name(qualified: str) -> str:
    if qualified.startswith("typing_extensions."):
        qualified = "typing." + qualified[len("typing_extensions.") :]
    if qualified.startswith("builtins."):
        return qualified[len("builtins.") :]
    return TYPING_CANONICAL.get(qualified, qualified)


def qualified_name(node: ast.expr, scope: ModuleScope) -> str | None:
    if isinstance(node, ast.Name):
        return scope.imports.get(node.id, node.id)
    if isinstance(node, ast.Attribute):
        base = qualified_name(node.value, scope)
        if base is None:
            return None
        return f"{base}.{node.attr}"
    return None


def subscript_args(node: ast.Subscript) -> List[ast.expr]:
    if isinstance(node.slice, ast.Tuple):
        return list(node.slice.elts)
    return [node.slice]


def import_base(node: ast.ImportFrom, package: str) -> str:
    module = node.module or ""
    if node.level == 0:
        return module
    if node.level == 1:
        return f"{package}.{module}" if module else package
    # Above the package root only the tail of the path is known.
    return module


def collect_statement(scope: ModuleScope, node: ast.stmt, package: str, assignments: list) -> None:
    if isinstance(node, ast.Import):
        for alias in node.names:
            if alias.asname:
                scope.imports[alias.asname] = alias.name
            else:
                top = alias.name.split(".")[0]
                scope.imports[top] = top
    elif isinstance(node, ast.ImportFrom):
        base = import_base(node, package)
        for alias in node.names:
            if alias.name == "*":
                scope.star_imports.append(base)
                continue
            scope.imports[alias.asname or alias.name] = f"{base}.{alias.name}" if base else alias.name
    elif isinstance(node, ast.ClassDef):
        scope.classes[node.name] = node
    elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        scope.values.add(node.name)
    elif isinstance(node, ast.Assign):
        for target in node.targets:
            if isinstance(target, ast.Name) and len(node.targets) == 1:
                assignments.append((target.id, node.value, None))
            elif isinstance(target, ast.Name):
                scope.values.add(target.id)
    elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
        assignments.append((node.target.id, node.value, node.annotation))
    elif isinstance(node, ast.If):
        # TYPE_CHECKING blocks and version switches
        for child in node.body + node.orelse:
            collect_statement(scope, child, package, assignments)
    elif isinstance(node, ast.Try):
        for child in node.body + node.orelse + node.finalbody:
            collect_statement(scope, child, package, assignments)
        for handler in node.handlers:
            for child in handler.body:
                collect_statement(scope, child, package, assignments)


def classify_assignment(scope: ModuleScope, name: str, value: ast.expr | None, annotation: ast.expr | None) -> None:
    if annotation is not None:
        marker = qualified_name(annotation, scope)
        if value is not None and marker is not None and canonical_name(marker) == "typing.TypeAlias":
            scope.aliases[name] = value
        else:
            scope.values.add(name)
        return
    if isinstance(value, ast.Call):
        factory = qualified_name(value.func, scope)
        if factory is not None and canonical_name(factory) in NAMED_TYPE_FACTORIES:
            scope.named_types.add(name)
        else:
            scope.values.add(name)
    elif isinstance(value, TYPE_EXPRESSION_NODES):
        scope.aliases[name] = value
    else:
        scope.values.add(name)


def parse_module(path: pathlib.Path, package: str) -> ModuleScope:
    try:
        source = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise LoadError(f"reading package: {e}", path) from e
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError as e:
        raise LoadError(f"parsing package: {e.msg}", path, e.lineno or 0, e.offset or 0) from e

    scope = ModuleScope(name=path.stem, path=path, tree=tree)
    assignments: list = []
    for node in tree.body:
        collect_statement(scope, node, package, assignments)
    for name, value, annotation in assignments:
        classify_assignment(scope, name, value, annotation)
    return scope


class TypeResolver:
    """Resolves annotation expressions of one module to display names."""

    def __init__(self, package: Package, scope: ModuleScope, resolving: List[Tuple[str, str]] | None = None) -> None:
        self.package = package
        self.scope = scope
        self.resolving = resolving if resolving is not None else []

    def error(self, message: str, node: ast.AST) -> LoadError:
        line = getattr(node, "lineno", 0)
        col = getattr(node, "col_offset", 0) + 1
        return LoadError(message, self.scope.path, line, col)

    def resolve(self, node: ast.expr) -> str:
        if isinstance(node, ast.Constant):
            if node.value is None:
                return "None"
            if node.value is Ellipsis:
                return "..."
            if isinstance(node.value, str):
                return self.resolve(self.parse_forward_ref(node))
            raise self.error(f"{node.value!r} is not a type", node)
        if isinstance(node, ast.Name):
            return self.resolve_name(node.id, node)
        if isinstance(node, ast.Attribute):
            return self.resolve_attribute(node)
        if isinstance(node, ast.Subscript):
            return self.resolve_subscript(node)
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            return join_union([self.resolve(node.left), self.resolve(node.right)])
        if isinstance(node, ast.List):
            return "[" + ", ".join(self.resolve(elt) for elt in node.elts) + "]"
        raise self.error(f"invalid type expression {ast.unparse(node)}", node)

    def parse_forward_ref(self, node: ast.Constant) -> ast.expr:
        try:
            expr = ast.parse(node.value.strip(), mode="eval").body
        except SyntaxError as e:
            raise self.error(f"invalid forward reference {node.value!r}: {e.msg}", node) from e
        for child in ast.walk(expr):
            if isinstance(child, ast.expr):
                child.lineno = node.lineno
                child.col_offset = node.col_offset
        return expr

    def resolve_name(self, name: str, node: ast.AST) -> str:
        scope = self.scope
        if name in scope.classes or name in scope.named_types:
            return self.package.type_path(scope.name, name)
        if name in scope.aliases:
            return self.resolve_alias(name, node)
        if name in scope.imports:
            return self.resolve_qualified(scope.imports[name], node)
        if name in scope.values:
            raise self.error(f"{name} is not a type", node)
        external = ""
        for base in scope.star_imports:
            module = self.package_module(base)
            if module is None:
                external = base
            elif module.defines(name):
                return self.resolve_in_package(f"{base}.{name}", node) or name
        if name in BUILTIN_TYPES:
            return name
        if external:
            # the last star import binds names not defined in the package
            return canonical_name(f"{external}.{name}")
        raise self.error(f"undefined: {name}", node)

    def resolve_alias(self, name: str, node: ast.AST) -> str:
        key = (self.scope.name, name)
        if key in self.resolving:
            raise self.error(f"invalid recursive type alias {name}", node)
        self.resolving.append(key)
        try:
            return self.resolve(self.scope.aliases[name])
        finally:
            self.resolving.pop()

    def resolve_qualified(self, qualified: str, node: ast.AST) -> str:
        found = self.resolve_in_package(qualified, node)
        if found is not None:
            return found
        return canonical_name(qualified)

    def package_module(self, qualified: str) -> ModuleScope | None:
        if not self.package.has_init and qualified in self.package.modules:
            return self.package.modules[qualified]
        if qualified == self.package.name:
            return self.package.modules.get("__init__")
        prefix = f"{self.package.name}."
        if not qualified.startswith(prefix):
            return None
        return self.package.modules.get(qualified[len(prefix) :])

    def resolve_in_package(self, qualified: str, node: ast.AST) -> str | None:
        if self.package_module(qualified) is not None:
            raise self.error(f"{qualified} is a module, not a type", node)
        module_path, _, name = qualified.rpartition(".")
        module = self.package_module(module_path)
        if module is None:
            return None
        if not module.defines(name):
            if module.name == "__init__" and name in self.package.class_modules:
                return self.package.type_path(self.package.class_modules[name].name, name)
            raise self.error(f"cannot import name {name} from {self.package.import_path(module.name)}", node)
        if name in module.values:
            raise self.error(f"{name} is not a type", node)
        key = (module.name, f"import {name}")
        if key in self.resolving:
            raise self.error(f"import cycle resolving {name}", node)
        self.resolving.append(key)
        try:
            return TypeResolver(self.package, module, self.resolving).resolve_name(name, node)
        finally:
            self.resolving.pop()

    def resolve_attribute(self, node: ast.Attribute) -> str:
        root = node.value
        while isinstance(root, ast.Attribute):
            root = root.value
        if not isinstance(root, ast.Name):
            raise self.error(f"invalid type expression {ast.unparse(node)}", node)
        if root.id in self.scope.imports:
            return self.resolve_qualified(qualified_name(node, self.scope) or "", node)
        if root.id in self.scope.classes:
            return f"{self.package.import_path(self.scope.name)}.{ast.unparse(node)}"
        raise self.error(f"undefined: {root.id}", root)

    def resolve_subscript(self, node: ast.Subscript) -> str:
        base = self.resolve(node.value)
        args = subscript_args(node)
        if base in TRANSPARENT_QUALIFIERS:
            return self.resolve(args[0])
        if base == "typing.Optional":
            return join_union([self.resolve(args[0]), "None"])
        if base == "typing.Union":
            return join_union([self.resolve(arg) for arg in args])
        if base == "typing.Literal":
            return f"{base}[{', '.join(ast.unparse(arg) for arg in args)}]"
        return f"{base}[{', '.join(self.resolve(arg) for arg in args)}]"

    def annotated_tags(self, node: ast.expr) -> List[str]:
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            node = self.parse_forward_ref(node)
        if not isinstance(node, ast.Subscript):
            return []
        base = self.resolve(node.value)
        args = subscript_args(node)
        if base == "typing.Annotated":
            return [arg.value for arg in args[1:] if isinstance(arg, ast.Constant) and isinstance(arg.value, str)]
        if base in TRANSPARENT_QUALIFIERS:
            return self.annotated_tags(args[0])
        return []


def field_factory_call(value: ast.expr | None, scope: ModuleScope) -> ast.Call | None:
    if not isinstance(value, ast.Call):
        return None
    factory = qualified_name(value.func, scope)
    if factory is None or canonical_name(factory) not in FIELD_FACTORIES:
        return None
    return value


def metadata_tags(call: ast.Call) -> List[str]:
    tags: List[str] = []
    for keyword in call.keywords:
        if keyword.arg != "metadata" or not isinstance(keyword.value, ast.Dict):
            continue
        for key, value in zip(keyword.value.keys, keyword.value.values):
            if isinstance(key, ast.Constant) and isinstance(value, ast.Constant):
                if isinstance(key.value, str) and isinstance(value.value, str):
                    tags.append(f'{key.value}:"{value.value}"')
    return tags


def call_has_default(call: ast.Call) -> bool:
    if any(keyword.arg in ("default", "default_factory", "factory") for keyword in call.keywords):
        return True
    # pydantic.Field(...) marks a required field
    return bool(call.args) and not (isinstance(call.args[0], ast.Constant) and call.args[0].value is Ellipsis)


def is_init_field(call: ast.Call) -> bool:
    for keyword in call.keywords:
        if keyword.arg == "init" and isinstance(keyword.value, ast.Constant) and keyword.value.value is False:
            return False
    return True


def has_keyword_init(resolver: TypeResolver, cls: ast.ClassDef) -> bool:
    for decorator in cls.decorator_list:
        target = decorator.func if isinstance(decorator, ast.Call) else decorator
        name = qualified_name(target, resolver.scope)
        if name is not None and canonical_name(name) in RECORD_DECORATORS:
            return True
    return any(isinstance(stmt, ast.FunctionDef) and stmt.name == "__init__" for stmt in cls.body)


def class_fields(resolver: TypeResolver, cls: ast.ClassDef) -> List[FieldDescriptor]:
    fields: List[FieldDescriptor] = []
    for stmt in cls.body:
        if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
            continue
        display = resolver.resolve(stmt.annotation)
        if any(display == q or display.startswith(q + "[") for q in NON_FIELD_QUALIFIERS):
            continue

        tags = resolver.annotated_tags(stmt.annotation)
        has_default = stmt.value is not None
        call = field_factory_call(stmt.value, resolver.scope)
        if call is not None:
            if not is_init_field(call):
                continue
            tags.extend(metadata_tags(call))
            has_default = call_has_default(call)

        fields.append(
            FieldDescriptor(
                name=stmt.target.id,
                type=TypeRef(display),
                raw_tag=" ".join(tags),
                has_default=has_default,
            )
        )
    return fields


def build_record(package: Package, name: str, stack: List[str]) -> RecordType:
    if name in package.records:
        return package.records[name]
    scope = package.class_modules[name]
    cls = scope.classes[name]
    if name in stack:
        raise LoadError(f"invalid recursive base class {name}", scope.path, cls.lineno, cls.col_offset + 1)
    stack.append(name)

    resolver = TypeResolver(package, scope)
    merged: Dict[str, FieldDescriptor] = {}
    keyword_init = has_keyword_init(resolver, cls)
    for base in reversed(cls.bases):
        if isinstance(base, ast.Subscript):
            base = base.value
        if not isinstance(base, (ast.Name, ast.Attribute)) or (
            # declarative_base() and similar runtime-built bases
            isinstance(base, ast.Name) and base.id in scope.values
        ):
            keyword_init = True
            continue
        display = resolver.resolve(base)
        base_name = display.rpartition(".")[2]
        base_scope = package.class_modules.get(base_name)
        if base_scope is None or display != package.type_path(base_scope.name, base_name):
            keyword_init = keyword_init or display not in PLAIN_BASES
            continue
        base_record = build_record(package, base_name, stack)
        keyword_init = keyword_init or base_record.keyword_init
        for field in base_record.fields:
            merged[field.name] = field
    for field in class_fields(resolver, cls):
        merged[field.name] = field

    stack.pop()
    record = RecordType(
        name=name,
        package=package.name,
        module=scope.name,
        fields=list(merged.values()),
        keyword_init=keyword_init,
    )
    package.records[name] = record
    return record


def check_package(package: Package) -> None:
    for scope in package.modules.values():
        for name, cls in scope.classes.items():
            previous = package.class_modules.get(name)
            if previous is not None:
                raise LoadError(
                    f"{name} redeclared in this package (previous declaration in {previous.path.name})",
                    scope.path,
                    cls.lineno,
                    cls.col_offset + 1,
                )
            package.class_modules[name] = scope

    for name in package.class_modules:
        build_record(package, name, [])


def is_generated_file(path: pathlib.Path) -> bool:
    return path.name.endswith(OUTPUT_SUFFIX)


def is_eligible_module(path: pathlib.Path) -> bool:
    if path.suffix != ".py" or not path.is_file() or is_generated_file(path):
        return False
    stem = path.stem
    if stem == "__init__":
        return True
    if stem.startswith(("_", ".")) or not stem.isidentifier():
        return False
    return not (stem.startswith("test_") or stem.endswith("_test"))


def load_package(directory: pathlib.Path | str) -> Package:
    directory = pathlib.Path(directory)
    if not directory.exists():
        raise LoadError(f"cannot process directory {directory}: no such directory")
    if not directory.is_dir():
        raise LoadError(f"cannot process directory {directory}: not a directory")

    paths = sorted(p for p in directory.iterdir() if is_eligible_module(p))
    if not paths:
        raise LoadError(f"{directory}: no buildable Python files")

    package = Package(
        name=directory.resolve().name,
        directory=directory,
        has_init=(directory / "__init__.py").is_file(),
    )
    for path in paths:
        scope = parse_module(path, package.name)
        package.modules[scope.name] = scope
    check_package(package)
    return package


# Field resolution


def field_matches(src: FieldDescriptor, dst: FieldDescriptor) -> bool:
    if src.name == dst.name:
        return True
    src_tag = parse_tag(src.raw_tag).get(TAG_KEY)
    dst_tag = parse_tag(dst.raw_tag).get(TAG_KEY)
    return src_tag is not None and dst_tag is not None and src_tag.name == dst_tag.name


def resolve_field(src_type: RecordType, dst_field: FieldDescriptor) -> MappingDecision:
    for src_field in src_type.fields:
        if not field_matches(src_field, dst_field):
            continue
        if src_field.type == dst_field.type:
            return MappingDecision(destination=dst_field, source=src_field)
        if dst_field.type.display == STRING_TYPE:
            return MappingDecision(destination=dst_field, source=src_field, coercion=COERCION_STRING_FORMAT)
        return MappingDecision(destination=dst_field, source=src_field, skipped_reason=SKIP_TYPE_MISMATCH)
    return MappingDecision(destination=dst_field, skipped_reason=SKIP_NO_MATCH)


def resolve_fields(src_type: RecordType, dst_type: RecordType) -> List[MappingDecision]:
    """Decide, for every destination field in declaration order, which source field feeds it.

    The first source field (in declaration order) matching by name or by repack
    tag wins, even when its type turns out to be incompatible.
    """
    return [resolve_field(src_type, dst_field) for dst_field in dst_type.fields]


def type_import(package: Package, record: RecordType, local: bool, alias: str = "") -> str:
    if not package.has_init:
        origin = record.module
    elif local:
        origin = "." if record.module == "__init__" else f".{record.module}"
    else:
        origin = package.import_path(record.module)
    target = f"{record.name} as {alias}" if alias else record.name
    return f"from {origin} import {target}"


def build_constructor_spec(
    src_package: Package, src_type: RecordType, dst_package: Package, dst_type: RecordType
) -> ConstructorSpec:
    if not dst_type.keyword_init:
        raise TypeLookupError(
            f"{dst_type.name} in package {dst_package.name} cannot be built from keyword arguments"
            " (declare it as a dataclass, NamedTuple, TypedDict, attrs or pydantic model, or define __init__)"
        )
    local = src_package.directory.resolve() == dst_package.directory.resolve()
    same_type = local and src_type.module == dst_type.module and src_type.name == dst_type.name

    spec = ConstructorSpec(
        source_package=src_package.name,
        source_type=src_type.name,
        destination_package=dst_package.name,
        destination_type=dst_type.name,
        source_ref=src_type.name,
        decisions=resolve_fields(src_type, dst_type),
    )
    if not same_type:
        alias = ""
        if src_type.name == dst_type.name:
            alias = f"Source{src_type.name}"
            spec.source_ref = alias
        spec.imports.append(type_import(src_package, src_type, local, alias))
    spec.imports.append(type_import(dst_package, dst_type, local=True))
    return spec


# Rendering


def constructor_name(type_name: str) -> str:
    return f"New{type_name}"


def render_constructor(
    spec: ConstructorSpec, command_line: str = "", warn: Callable[[str], None] = report
) -> str:
    name = constructor_name(spec.destination_type)
    invocation = " ".join([GENERATOR_NAME] + command_line.split())

    lines: List[str] = []
    lines.append(f'# Code generated by "{invocation}"; DO NOT EDIT.')
    lines.append(f'"""Repack constructors for package {spec.destination_package}."""')
    lines.append("")
    lines.append("import json")
    lines.append("")
    lines.extend(spec.imports)
    lines.append("")
    lines.append("")
    lines.append(f"def {name}(s: {spec.source_ref}) -> {spec.destination_type}:")
    lines.append(
        f'    """{name} creates {spec.destination_type} from {spec.source_package}.{spec.source_type}."""'
    )

    initializers: List[str] = []
    for decision in spec.decisions:
        dst_field = decision.destination
        src_field = decision.source
        if not decision.mapped:
            if src_field is not None:
                warn(f"skip field ({src_field.name}) due to different types ({src_field.type} -> {dst_field.type})")
            elif not dst_field.has_default:
                warn(f"field ({dst_field.name}) has no matching source field and no default")
            continue
        value = f"s.{src_field.name}"
        if decision.coercion == COERCION_STRING_FORMAT:
            value = f"str({value})"
        initializers.append(f"        {dst_field.name}={value},")

    if initializers:
        lines.append(f"    return {spec.destination_type}(")
        lines.extend(initializers)
        lines.append("    )")
    else:
        lines.append(f"    return {spec.destination_type}()")

    return "\n".join(lines) + "\n"


# Formatting


def parse_generated(text: str) -> ast.Module:
    try:
        return ast.parse(text)
    except SyntaxError as e:
        raise FormatError(f"failed to format generated code: line {e.lineno}: {e.msg}") from e


def used_names(tree: ast.Module) -> set[str]:
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            names.add(node.id)
        elif isinstance(node, ast.Assign) and any(
            isinstance(t, ast.Name) and t.id == "__all__" for t in node.targets
        ):
            if isinstance(node.value, (ast.List, ast.Tuple)):
                names.update(e.value for e in node.value.elts if isinstance(e, ast.Constant))
    return names


def bound_name(alias: ast.alias, from_import: bool) -> str:
    if alias.asname:
        return alias.asname
    return alias.name if from_import else alias.name.split(".")[0]


def prune_imports(text: str, tree: ast.Module) -> str:
    lines = text.splitlines()
    used = used_names(tree)
    for node in reversed(tree.body):
        if not isinstance(node, (ast.Import, ast.ImportFrom)):
            continue
        from_import = isinstance(node, ast.ImportFrom)
        if from_import and node.module == "__future__":
            continue
        kept = [a for a in node.names if a.name == "*" or bound_name(a, from_import) in used]
        if len(kept) == len(node.names):
            continue
        replacement: List[str] = []
        if kept:
            node.names = kept
            replacement.append(ast.unparse(node))
        lines[node.lineno - 1 : node.end_lineno] = replacement
    return "\n".join(lines)


def string_lines(tree: ast.Module) -> Tuple[set[int], set[int]]:
    """Lines opening a multi-line string literal, and the lines inside one."""
    opening: set[int] = set()
    inner: set[int] = set()
    for node in ast.walk(tree):
        if isinstance(node, (ast.Constant, ast.JoinedStr)) and node.end_lineno is not None:
            if node.end_lineno > node.lineno:
                opening.add(node.lineno)
                inner.update(range(node.lineno + 1, node.end_lineno + 1))
    return opening, inner


def normalize_lines(lines: Sequence[str], opening: set[int], inner: set[int]) -> List[str]:
    out: List[str] = []
    blanks = 0
    for number, line in enumerate(lines, start=1):
        if number in inner:
            out.extend([""] * blanks)
            blanks = 0
            out.append(line)
            continue
        if number not in opening:
            line = line.rstrip()
        if not line:
            blanks += 1
            continue
        if out:
            limit = 2 if TOP_LEVEL_DEF.match(line) else 1
            out.extend([""] * min(blanks, limit))
        blanks = 0
        out.append(line)
    return out


def format_source(text: str) -> str:
    """Prune unused imports and normalize whitespace of generated Python code."""
    pruned = prune_imports(text, parse_generated(text))
    opening, inner = string_lines(parse_generated(pruned))
    formatted = "\n".join(normalize_lines(pruned.splitlines(), opening, inner)) + "\n"
    parse_generated(formatted)
    return formatted


# Driver


def output_path(config: Config) -> pathlib.Path:
    return pathlib.Path(config.target_dir) / f"{config.dst_type.lower()}{OUTPUT_SUFFIX}"


def generate(config: Config, warn: Callable[[str], None] = report) -> str:
    dst_package = load_package(config.target_dir)
    src_package = load_package(config.src_dir)
    src_type = src_package.lookup(config.src_type)
    dst_type = dst_package.lookup(config.dst_type)

    spec = build_constructor_spec(src_package, src_type, dst_package, dst_type)
    return format_source(render_constructor(spec, config.command_line, warn))


def write_output(path: pathlib.Path, rendered: str) -> None:
    try:
        path.write_text(rendered, encoding="utf-8")
    except OSError as e:
        raise WriteError(f"writing output: {e}") from e


def run(config: Config) -> int:
    out_path = output_path(config)
    try:
        rendered = generate(config)

        if config.check:
            if not out_path.exists():
                print(f"{out_path} is missing (run generator)", file=sys.stderr)
                return 1
            if out_path.read_text(encoding="utf-8") != rendered:
                print(f"{out_path} is out of date (run generator)", file=sys.stderr)
                return 1
            print(f"up-to-date: {out_path}")
            return 0

        if out_path.exists() and out_path.read_text(encoding="utf-8") == rendered:
            print(f"unchanged: {out_path}")
            return 0

        write_output(out_path, rendered)
    except RepackError as e:
        return fail(e)

    print(f"generated: {out_path}")
    return 0


def config_from_args(args: argparse.Namespace, argv: Sequence[str] = ()) -> Config:
    if not args.srcdir:
        raise ConfigError("--srcdir must be set")
    for option, value in (("--srctype", args.srctype), ("--dsttype", args.dsttype)):
        if not value:
            raise ConfigError(f"{option} must be set")
        if not value.isidentifier():
            raise ConfigError(f"{option} is not a valid type name: {value!r}")
    return Config(
        target_dir=pathlib.Path(args.dir),
        src_dir=pathlib.Path(args.srcdir),
        src_type=args.srctype,
        dst_type=args.dsttype,
        argv=tuple(argv),
        check=args.check,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=GENERATOR_NAME,
        description="Generate a New<DstType> constructor that repacks a source record into a destination record",
    )
    parser.add_argument("--srcdir", required=True, help="Directory holding the source type's package")
    parser.add_argument("--srctype", required=True, help="Source type name")
    parser.add_argument("--dsttype", required=True, help="Destination type name")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    parser.add_argument("dir", nargs="?", default=".", help="Destination package directory (default: .)")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args, argv)
    except ConfigError as e:
        parser.print_usage(sys.stderr)
        report(str(e))
        return 2
    return run(config)


if __name__ == "__main__":
    raise SystemExit(main())
