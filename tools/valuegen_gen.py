#!/usr/bin/env python3
"""valuegen value-method generator.

Input:  Python module of generated classes (the output of a schema compiler).
Output: the same module with __eq__, __hash__ and __repr__ synthesized for
        every concrete class from its own and its in-module ancestors' fields.
"""

from __future__ import annotations

import argparse
import ast
import dataclasses
import hashlib
import pathlib
import re
import sys
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
RUNTIME_MODULE = "valuegen"
DIGEST_PATTERN = re.compile(r"^# digest: ([0-9a-f]{64})$", re.MULTILINE)

ABSTRACT_BASES = {"ABC", "abc.ABC"}
ABSTRACT_METACLASSES = {"ABCMeta", "abc.ABCMeta"}
ABSTRACT_DECORATORS = {"abstractmethod", "abc.abstractmethod"}
CLASSVAR_NAMES = {"ClassVar", "typing.ClassVar"}
GENERIC_BASES = {"Generic", "typing.Generic", "Protocol", "typing.Protocol"}
# Bases whose subclasses are not value classes.
NON_VALUE_BASES = {
    "Enum",
    "IntEnum",
    "StrEnum",
    "Flag",
    "IntFlag",
    "enum.Enum",
    "enum.IntEnum",
    "enum.StrEnum",
    "enum.Flag",
    "enum.IntFlag",
    "NamedTuple",
    "typing.NamedTuple",
    "TypedDict",
    "typing.TypedDict",
    "Protocol",
    "typing.Protocol",
    "Exception",
    "BaseException",
}
DATACLASS_DECORATORS = {"dataclass", "dataclasses.dataclass"}
DATACLASS_PSEUDO_FIELDS = {"KW_ONLY", "dataclasses.KW_ONLY", "InitVar", "dataclasses.InitVar"}

REPR_METHOD = "__repr__"
HASH_METHOD = "__hash__"
EQ_METHOD = "__eq__"
VALUE_METHODS = (REPR_METHOD, HASH_METHOD, EQ_METHOD)

TO_STRING_HELPER = "to_string_helper"
HASH_HELPER = "hash_values"
OVERRIDE_DECORATOR = "override"


class ModelError(RuntimeError):
    def __init__(self, message: str, lineno: int, col: int = 0) -> None:
        super().__init__(message)
        self.lineno = lineno
        self.col = col


@dataclasses.dataclass
class GeneratorOptions:
    skip_repr: bool = False


@dataclasses.dataclass
class FieldDescriptor:
    name: str
    owner: str
    is_static: bool = False

    @property
    def attribute(self) -> str:
        """Attribute spelling as seen from outside the declaring class body."""
        if self.name.startswith("__") and not self.name.endswith("__"):
            owner = self.owner.lstrip("_")
            if owner:
                return f"_{owner}{self.name}"
        return self.name


@dataclasses.dataclass
class GeneratedMethod:
    name: str
    node: ast.FunctionDef
    runtime_names: Tuple[str, ...] = ()


@dataclasses.dataclass
class ClassDescriptor:
    name: str
    qualname: str
    scope: str = ""
    is_abstract: bool = False
    fields: List[FieldDescriptor] = dataclasses.field(default_factory=list)
    base_name: Optional[str] = None
    superclass: Optional["ClassDescriptor"] = None
    existing_methods: Set[str] = dataclasses.field(default_factory=set)
    generated: List[GeneratedMethod] = dataclasses.field(default_factory=list)
    line: int = 0
    end_line: int = 0
    depth: int = 0
    indent: str = "    "

    def has_method(self, name: str) -> bool:
        return name in self.existing_methods

    def attach(self, method: GeneratedMethod) -> None:
        self.generated.append(method)
        self.existing_methods.add(method.name)


@dataclasses.dataclass
class ToStringRequest:
    entries: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
    omit_null_values: bool = True


def fail(path: pathlib.Path, error: ModelError) -> None:
    print(f"{path}:{error.lineno}:{error.col + 1}: error: {error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Model building
# ---------------------------------------------------------------------------


def dotted_name(node: ast.expr) -> str:
    if isinstance(node, ast.Subscript):
        node = node.value
    return ast.unparse(node)


def superclass_name(node: ast.ClassDef) -> Optional[str]:
    for base in node.bases:
        name = dotted_name(base)
        if name == "object" or name in ABSTRACT_BASES or name in GENERIC_BASES:
            continue
        return name
    return None


def is_value_class(node: ast.ClassDef) -> bool:
    return not any(dotted_name(base) in NON_VALUE_BASES for base in node.bases)


def is_abstract_class(node: ast.ClassDef) -> bool:
    for base in node.bases:
        if dotted_name(base) in ABSTRACT_BASES:
            return True
    for kw in node.keywords:
        if kw.arg == "metaclass" and dotted_name(kw.value) in ABSTRACT_METACLASSES:
            return True
    for stmt in node.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
            for dec in stmt.decorator_list:
                if dotted_name(dec) in ABSTRACT_DECORATORS:
                    return True
    return False


def is_classvar(annotation: ast.expr) -> bool:
    if isinstance(annotation, ast.Constant) and isinstance(annotation.value, str):
        return re.match(r"^(typing\.)?ClassVar\b", annotation.value.strip()) is not None
    return dotted_name(annotation) in CLASSVAR_NAMES


def dataclass_methods(node: ast.ClassDef) -> Set[str]:
    """Methods a @dataclass decorator will synthesize for this class."""
    for dec in node.decorator_list:
        func = dec.func if isinstance(dec, ast.Call) else dec
        if dotted_name(func) not in DATACLASS_DECORATORS:
            continue
        flags = {"eq": True, "repr": True, "frozen": False, "unsafe_hash": False}
        if isinstance(dec, ast.Call):
            for kw in dec.keywords:
                if kw.arg in flags and isinstance(kw.value, ast.Constant):
                    flags[kw.arg] = bool(kw.value.value)
        methods: Set[str] = set()
        if flags["eq"]:
            methods.add(EQ_METHOD)
        if flags["repr"]:
            methods.add(REPR_METHOD)
        # With eq on, the dataclass owns __hash__ too: it generates one or sets it to None.
        if flags["unsafe_hash"] or flags["eq"]:
            methods.add(HASH_METHOD)
        return methods
    return set()


def slot_names(value: ast.expr) -> List[str]:
    if isinstance(value, ast.Constant) and isinstance(value.value, str):
        return [value.value]
    if isinstance(value, (ast.Tuple, ast.List)):
        return [elt.value for elt in value.elts if isinstance(elt, ast.Constant) and isinstance(elt.value, str)]
    return []


def init_assigned_names(func: ast.FunctionDef) -> List[str]:
    if not func.args.args:
        return []
    receiver = func.args.args[0].arg
    stores: List[Tuple[int, int, str]] = []
    for node in ast.walk(func):
        if (
            isinstance(node, ast.Attribute)
            and isinstance(node.ctx, ast.Store)
            and isinstance(node.value, ast.Name)
            and node.value.id == receiver
        ):
            stores.append((node.lineno, node.col_offset, node.attr))
    # ast.walk is breadth-first; sort back into source order.
    return list(dict.fromkeys(attr for _, _, attr in sorted(stores)))


def collect_class_fields(node: ast.ClassDef) -> List[FieldDescriptor]:
    fields: List[FieldDescriptor] = []
    seen: Set[str] = set()

    def add(name: str, is_static: bool) -> None:
        if name in seen:
            return
        seen.add(name)
        fields.append(FieldDescriptor(name=name, owner=node.name, is_static=is_static))

    init_funcs: List[ast.FunctionDef] = []
    for stmt in node.body:
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            if dotted_name(stmt.annotation) in DATACLASS_PSEUDO_FIELDS:
                continue
            add(stmt.target.id, is_classvar(stmt.annotation))
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if not isinstance(target, ast.Name):
                    continue
                if target.id == "__slots__":
                    for slot in slot_names(stmt.value):
                        add(slot, False)
                elif not (target.id.startswith("__") and target.id.endswith("__")):
                    add(target.id, True)
        elif isinstance(stmt, ast.FunctionDef) and stmt.name == "__init__":
            init_funcs.append(stmt)

    for func in init_funcs:
        for name in init_assigned_names(func):
            add(name, False)

    return fields


def collect_existing_methods(node: ast.ClassDef) -> Set[str]:
    methods = dataclass_methods(node)
    for stmt in node.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
            methods.add(stmt.name)
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name) and target.id in VALUE_METHODS:
                    methods.add(target.id)
    return methods


def body_indent(node: ast.ClassDef, lines: Sequence[str]) -> str:
    first = node.body[0]
    text = lines[first.lineno - 1]
    indent = text[: len(text) - len(text.lstrip())]
    if len(indent) != first.col_offset:
        raise ModelError(
            f"single-line class body of '{node.name}' is not supported; put the body on its own lines",
            node.lineno,
            node.col_offset,
        )
    return indent


def describe_class(node: ast.ClassDef, scope: Sequence[str], lines: Sequence[str]) -> ClassDescriptor:
    qualname = ".".join(list(scope) + [node.name])
    return ClassDescriptor(
        name=node.name,
        qualname=qualname,
        scope=".".join(scope),
        is_abstract=is_abstract_class(node),
        fields=collect_class_fields(node),
        base_name=superclass_name(node),
        existing_methods=collect_existing_methods(node),
        line=node.lineno,
        end_line=node.end_lineno or node.lineno,
        depth=len(scope),
        indent=body_indent(node, lines),
    )


def base_candidates(scope: str, base_name: str) -> List[str]:
    candidates: List[str] = []
    if scope and "." not in base_name:
        candidates.append(f"{scope}.{base_name}")
    candidates.append(base_name)
    return candidates


def extends_excluded(node: ast.ClassDef, scope: str, bindings: Dict[str, List[Tuple[int, bool]]]) -> bool:
    for base in node.bases:
        for qualname in base_candidates(scope, dotted_name(base)):
            bound = [is_excluded for end_line, is_excluded in bindings.get(qualname, []) if end_line < node.lineno]
            if bound:
                if bound[-1]:
                    return True
                break
    return False


def resolve_superclass(cls: ClassDescriptor, index: Dict[str, List[ClassDescriptor]]) -> Optional[ClassDescriptor]:
    if cls.base_name is None:
        return None
    for qualname in base_candidates(cls.scope, cls.base_name):
        # The last definition completed before this class statement is the one bound.
        for candidate in reversed(index.get(qualname, [])):
            if candidate.end_line < cls.line:
                return candidate
    return None


def build_model(tree: ast.Module, source_text: str) -> List[ClassDescriptor]:
    lines = source_text.split("\n")
    classes: List[ClassDescriptor] = []
    # qualname -> (end line, excluded) per definition, so subclasses of non-value classes are left out too
    bindings: Dict[str, List[Tuple[int, bool]]] = {}

    def visit(body: Sequence[ast.stmt], scope: List[str]) -> None:
        for stmt in body:
            if not isinstance(stmt, ast.ClassDef):
                continue
            is_excluded = not is_value_class(stmt) or extends_excluded(stmt, ".".join(scope), bindings)
            qualname = ".".join(scope + [stmt.name])
            bindings.setdefault(qualname, []).append((stmt.end_lineno or stmt.lineno, is_excluded))
            if is_excluded:
                continue
            classes.append(describe_class(stmt, scope, lines))
            visit(stmt.body, scope + [stmt.name])

    visit(tree.body, [])

    index: Dict[str, List[ClassDescriptor]] = {}
    for cls in classes:
        index.setdefault(cls.qualname, []).append(cls)
    for cls in classes:
        cls.superclass = resolve_superclass(cls, index)

    return classes


def parse_module(source_text: str) -> ast.Module:
    try:
        return ast.parse(source_text)
    except SyntaxError as e:
        raise ModelError(e.msg, e.lineno or 1, max((e.offset or 1) - 1, 0)) from e


# ---------------------------------------------------------------------------
# Field classification
# ---------------------------------------------------------------------------


def filter_instance_fields(fields: Iterable[FieldDescriptor]) -> List[FieldDescriptor]:
    return [field for field in fields if not field.is_static]


def collect_superclass_fields(cls: ClassDescriptor) -> List[FieldDescriptor]:
    collected: List[FieldDescriptor] = []
    superclass = cls.superclass
    while superclass is not None:
        collected[0:0] = superclass.fields
        superclass = superclass.superclass
    return collected


def identity_fields(cls: ClassDescriptor) -> List[FieldDescriptor]:
    ordered = filter_instance_fields(collect_superclass_fields(cls)) + filter_instance_fields(cls.fields)
    result: List[FieldDescriptor] = []
    seen: Set[str] = set()
    for field in ordered:
        if field.attribute in seen:
            continue
        seen.add(field.attribute)
        result.append(field)
    return result


# ---------------------------------------------------------------------------
# Method synthesis
# ---------------------------------------------------------------------------


def name_expr(name: str) -> ast.expr:
    if "." in name:
        return ast.parse(name, mode="eval").body
    return ast.Name(id=name, ctx=ast.Load())


def const(value: object) -> ast.Constant:
    return ast.Constant(value=value, kind=None)


def self_attr(receiver: str, field: FieldDescriptor) -> ast.Attribute:
    return ast.Attribute(value=name_expr(receiver), attr=field.attribute, ctx=ast.Load())


def arg(name: str, annotation: Optional[ast.expr] = None) -> ast.arg:
    return ast.arg(arg=name, annotation=annotation, type_comment=None)


def make_method(name: str, params: List[ast.arg], body: List[ast.stmt], returns: str) -> ast.FunctionDef:
    node = ast.FunctionDef(
        name=name,
        args=ast.arguments(
            posonlyargs=[],
            args=[arg("self")] + params,
            vararg=None,
            kwonlyargs=[],
            kw_defaults=[],
            kwarg=None,
            defaults=[],
        ),
        body=body,
        decorator_list=[name_expr(OVERRIDE_DECORATOR)],
        returns=name_expr(returns),
        type_comment=None,
        type_params=[],
    )
    return ast.fix_missing_locations(node)


def render_to_string_request(request: ToStringRequest) -> ast.expr:
    entries = ast.Tuple(
        elts=[
            ast.Tuple(
                elts=[const(label), ast.Attribute(value=name_expr("self"), attr=attribute, ctx=ast.Load())],
                ctx=ast.Load(),
            )
            for label, attribute in request.entries
        ],
        ctx=ast.Load(),
    )
    return ast.Call(
        func=name_expr(TO_STRING_HELPER),
        args=[name_expr("self"), entries],
        keywords=[ast.keyword(arg="omit_null_values", value=const(request.omit_null_values))],
    )


def generate_repr_method(cls: ClassDescriptor) -> GeneratedMethod:
    request = ToStringRequest(entries=[(field.name, field.attribute) for field in identity_fields(cls)])
    body: List[ast.stmt] = [ast.Return(value=render_to_string_request(request))]
    return GeneratedMethod(
        name=REPR_METHOD,
        node=make_method(REPR_METHOD, [], body, "str"),
        runtime_names=(OVERRIDE_DECORATOR, TO_STRING_HELPER),
    )


def generate_hash_method(cls: ClassDescriptor) -> Optional[GeneratedMethod]:
    fields = identity_fields(cls)
    # No hash for classes without identity fields.
    if not fields:
        return None

    values: List[ast.expr] = [self_attr("self", field) for field in fields]
    body: List[ast.stmt] = [ast.Return(value=ast.Call(func=name_expr(HASH_HELPER), args=values, keywords=[]))]
    return GeneratedMethod(
        name=HASH_METHOD,
        node=make_method(HASH_METHOD, [], body, "int"),
        runtime_names=(HASH_HELPER, OVERRIDE_DECORATOR),
    )


def if_return(test: ast.expr, value: bool) -> ast.If:
    return ast.If(test=test, body=[ast.Return(value=const(value))], orelse=[])


def type_of(name: str) -> ast.Call:
    return ast.Call(func=name_expr("type"), args=[name_expr(name)], keywords=[])


def generate_eq_method(cls: ClassDescriptor) -> Optional[GeneratedMethod]:
    fields = identity_fields(cls)
    # No equality for classes without identity fields.
    if not fields:
        return None

    other = name_expr("other")
    comparisons: List[ast.expr] = [
        ast.Compare(left=self_attr("self", field), ops=[ast.Eq()], comparators=[self_attr("o", field)])
        for field in fields
    ]
    result = comparisons[0] if len(comparisons) == 1 else ast.BoolOp(op=ast.And(), values=comparisons)

    body: List[ast.stmt] = [
        if_return(ast.Compare(left=name_expr("self"), ops=[ast.Is()], comparators=[other]), True),
        if_return(ast.Compare(left=other, ops=[ast.Is()], comparators=[const(None)]), False),
        if_return(ast.Compare(left=type_of("self"), ops=[ast.IsNot()], comparators=[type_of("other")]), False),
        ast.AnnAssign(
            target=ast.Name(id="o", ctx=ast.Store()),
            annotation=name_expr(cls.qualname),
            value=name_expr("other"),
            simple=1,
        ),
        ast.Return(value=result),
    ]
    return GeneratedMethod(
        name=EQ_METHOD,
        node=make_method(EQ_METHOD, [arg("other", name_expr("object"))], body, "bool"),
        runtime_names=(OVERRIDE_DECORATOR,),
    )


def synthesize_value_methods(classes: Sequence[ClassDescriptor], options: GeneratorOptions) -> None:
    for cls in classes:
        if not options.skip_repr and not cls.is_abstract and not cls.has_method(REPR_METHOD):
            cls.attach(generate_repr_method(cls))

        if not cls.is_abstract:
            if not cls.has_method(HASH_METHOD):
                method = generate_hash_method(cls)
                if method is not None:
                    cls.attach(method)
            if not cls.has_method(EQ_METHOD):
                method = generate_eq_method(cls)
                if method is not None:
                    cls.attach(method)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_method(method: GeneratedMethod, indent: str) -> str:
    body = ast.unparse(method.node).strip("\n")
    return "\n".join(indent + line if line else line for line in body.splitlines())


def imported_runtime_names(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for stmt in tree.body:
        if isinstance(stmt, ast.ImportFrom) and stmt.module == RUNTIME_MODULE and stmt.level == 0:
            names.update(alias.asname or alias.name for alias in stmt.names)
    return names


def import_insertion_line(tree: ast.Module) -> int:
    line = 0
    for idx, stmt in enumerate(tree.body):
        is_docstring = (
            idx == 0
            and isinstance(stmt, ast.Expr)
            and isinstance(stmt.value, ast.Constant)
            and isinstance(stmt.value.value, str)
        )
        if is_docstring or isinstance(stmt, (ast.Import, ast.ImportFrom)):
            line = stmt.end_lineno or stmt.lineno
            continue
        break
    return line


def apply_substitutions(source: str, tree: ast.Module, classes: Sequence[ClassDescriptor]) -> str:
    # Split on "\n" only so numbering matches the line numbers ast reports.
    lines = source.split("\n")
    if lines[-1] == "":
        lines.pop()
    lines = [line + "\n" for line in lines]

    insertions: Dict[int, List[Tuple[int, str]]] = {}
    needed: Set[str] = set()
    for cls in classes:
        if not cls.generated:
            continue
        rendered = ["\n" + render_method(method, cls.indent) + "\n" for method in cls.generated]
        insertions.setdefault(cls.end_line, []).append((cls.depth, "".join(rendered)))
        for method in cls.generated:
            needed.update(method.runtime_names)

    missing = sorted(needed - imported_runtime_names(tree))
    if missing:
        import_line = f"from {RUNTIME_MODULE} import {', '.join(missing)}\n"
        insertions.setdefault(import_insertion_line(tree), []).insert(0, (-1, import_line))

    pieces: List[str] = []
    if 0 in insertions:
        pieces.extend(text for _, text in insertions[0])
    for number, line in enumerate(lines, start=1):
        pieces.append(line)
        if number in insertions:
            # Innermost class first so outer methods land after the nested body.
            for _, text in sorted(insertions[number], key=lambda item: -item[0]):
                pieces.append(text)
    return "".join(pieces)


def compute_file_digest(source_bytes: bytes, options: GeneratorOptions) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(b"skip_repr=1" if options.skip_repr else b"skip_repr=0")
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def transform_source(source_text: str, options: GeneratorOptions) -> str:
    tree = parse_module(source_text)
    classes = build_model(tree, source_text)
    synthesize_value_methods(classes, options)
    return apply_substitutions(source_text, tree, classes)


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes, options: GeneratorOptions) -> str:
    transformed = transform_source(source_text, options)
    digest = compute_file_digest(source_bytes, options)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "# valuegen-generated\n"
        f"# source: {source_label}\n"
        f"# generator_version: {GENERATOR_VERSION}\n"
        f"# format_version: {FORMAT_VERSION}\n"
        f"# digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)
    options = GeneratorOptions(skip_repr=args.skip_repr)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered = render_file(in_path, source_text, source_bytes, options)
    except ModelError as e:
        fail(in_path, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate __eq__, __hash__ and __repr__ for the classes of a generated Python module"
    )
    parser.add_argument("--in", dest="input", required=True, help="Input module of generated classes")
    parser.add_argument("--out", dest="output", required=True, help="Output module with value methods")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    parser.add_argument("--skip-repr", dest="skip_repr", action="store_true", help="Do not generate __repr__ methods")
    return parser


if __name__ == "__main__":
    raise SystemExit(run(build_arg_parser().parse_args()))
