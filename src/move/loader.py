"""
Declaration loader - builds Move IR from JSON declaration files.

Parsing Move source is out of scope; declarations arrive already structured.
A file holds one module object, a list of them, or {"modules": [...]}:

    {
      "address": "0x2", "name": "M",
      "uses": {"vector": "0x1::vector"},
      "constants": [{"name": "E_EMPTY", "type": "u64", "value": 1}],
      "structs": [
        {"name": "Box", "abilities": ["key"],
         "type_params": [{"name": "T", "constraints": ["store"], "phantom": false}],
         "fields": [{"name": "value", "type": "T"}]}
      ],
      "functions": [
        {"name": "put", "public": true, "type_params": [...],
         "params": [{"name": "s", "type": "&signer"}], "returns": ["u64"],
         "acquires": ["Box"], "attributes": {"test": {}},
         "body": [{"op": "let", "name": "x", "value": {"lit": 1, "kind": "u64"}}, ...]}
      ]
    }

Statements are objects keyed by "op" (let, unpack, assign, expr, return,
abort, if, while, loop, break, continue). Expressions are objects with one
discriminating key (var, copy, move, lit, bytes, borrow, field, deref, call,
pack, binop, not, vector, cast); bare JSON numbers and booleans are literals,
"@0x.." strings are address literals and other strings are local names.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from core.utils import debug
from move.ir import (
    BUILTINS,
    AbortStmt,
    AssignStmt,
    BinOp,
    Borrow,
    BreakStmt,
    Call,
    Cast,
    ConstantDef,
    ContinueStmt,
    CopyVar,
    Deref,
    Expr,
    ExprStmt,
    FieldAccess,
    FieldDecl,
    Function,
    IfStmt,
    LetStmt,
    Literal,
    LoopStmt,
    Module,
    MoveVar,
    Param,
    ReturnStmt,
    Stmt,
    StructDecl,
    StructPack,
    TypeParamDecl,
    UnaryOp,
    UnpackStmt,
    VarRef,
    Vector,
    WhileStmt,
)
from move.types import (
    INTEGER_TYPES,
    AbilitySet,
    PrimitiveType,
    Type,
    TypeSyntaxError,
    VectorType,
    abilities,
    normalize_address,
    parse_type,
)

# Standard library modules reachable by their short name without a `uses` entry
DEFAULT_USES = {
    "signer": "0x1::signer",
    "vector": "0x1::vector",
    "hash": "0x1::hash",
}


class LoaderError(ValueError):
    """Malformed declaration file."""

    pass


class DeclarationLoader:
    """
    Transforms JSON declaration objects into Move IR.

    Usage:
        loader = DeclarationLoader()
        modules = loader.load_file("decls.json")
    """

    def __init__(self):
        self.module_id = ""
        self._import_map: Dict[str, str] = {}
        self._type_params: List[str] = []
        self._where = ""

    def _fail(self, message: str) -> LoaderError:
        where = f"{self.module_id}{'::' + self._where if self._where else ''}"
        return LoaderError(f"{where}: {message}" if where else message)

    def _qualify_module(self, partial: str) -> str:
        if partial in self._import_map:
            return self._import_map[partial]
        address = self.module_id.split("::")[0]
        return f"{address}::{partial}"

    def _qualify_name(self, name: str) -> str:
        """Qualify a struct or function name with its module id."""
        parts = name.split("::")
        if len(parts) == 1:
            return f"{self.module_id}::{name}"
        if len(parts) == 2:
            return f"{self._qualify_module(parts[0])}::{parts[1]}"
        return "::".join([normalize_address(parts[0])] + parts[1:])

    def _type(self, type_str: Any) -> Type:
        if not isinstance(type_str, str):
            raise self._fail(f"type must be a string, got {type_str!r}")
        try:
            return parse_type(type_str, self.module_id, self._type_params, self._qualify_module)
        except (TypeSyntaxError, ValueError) as e:
            raise self._fail(str(e))

    def _abilities(self, names: Iterable[str]) -> AbilitySet:
        try:
            return abilities(*names)
        except ValueError as e:
            raise self._fail(str(e))

    # =========================================================================
    # Modules and declarations
    # =========================================================================

    def load_file(self, path: Union[str, Path]) -> List[Module]:
        with open(path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise LoaderError(f"{path}: invalid JSON: {e}")
        modules = self.load(data)
        debug(f"Loaded {len(modules)} module(s) from {path}")
        return modules

    def load(self, data: Any) -> List[Module]:
        if isinstance(data, dict) and "modules" in data:
            data = data["modules"]
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise LoaderError("Expected a module object or a list of modules")
        return [self.build_module(m) for m in data]

    def build_module(self, data: Dict[str, Any]) -> Module:
        try:
            address = normalize_address(data["address"])
            name = data["name"]
        except KeyError as e:
            raise LoaderError(f"Module is missing {e}")
        module = Module(address=address, name=name)
        self.module_id = module.id
        self._where = ""
        self._import_map = dict(DEFAULT_USES)
        for alias, target in data.get("uses", {}).items():
            addr, _, mod_name = target.partition("::")
            self._import_map[alias] = f"{normalize_address(addr)}::{mod_name}"

        try:
            for item in data.get("structs", []):
                module.add_struct(self._build_struct(item))
            for item in data.get("constants", []):
                const = self._build_constant(item)
                module.constants[const.name] = const
            for item in data.get("functions", []):
                func = self._build_function(item)
                if func.name in module.functions:
                    raise self._fail(f"duplicate function '{func.name}'")
                module.add_function(func)
        except KeyError as e:
            raise self._fail(f"missing required key {e}")
        return module

    def _build_type_params(self, items: List[Any]) -> List[TypeParamDecl]:
        result = []
        for item in items:
            if isinstance(item, str):
                result.append(TypeParamDecl(item))
                continue
            result.append(
                TypeParamDecl(
                    item["name"],
                    self._abilities(item.get("constraints", [])),
                    bool(item.get("phantom", False)),
                )
            )
        return result

    def _build_struct(self, data: Dict[str, Any]) -> StructDecl:
        self._where = data.get("name", "?")
        type_params = self._build_type_params(data.get("type_params", []))
        self._type_params = [tp.name for tp in type_params]
        fields = [FieldDecl(f["name"], self._type(f["type"])) for f in data.get("fields", [])]
        decl = StructDecl(
            name=data["name"],
            module=self.module_id,
            fields=fields,
            abilities=self._abilities(data.get("abilities", [])),
            type_params=type_params,
            line=data.get("line", 0),
        )
        self._type_params = []
        return decl

    def _build_constant(self, data: Dict[str, Any]) -> ConstantDef:
        self._where = data.get("name", "?")
        typ = self._type(data["type"])
        value = data["value"]
        if typ == PrimitiveType("address"):
            value = normalize_address(value)
        elif isinstance(typ, PrimitiveType) and typ.name in INTEGER_TYPES:
            value = int(value)
        elif typ == VectorType(PrimitiveType("u8")) and isinstance(value, str):
            value = bytes.fromhex(value)
        return ConstantDef(data["name"], typ, value)

    def _build_function(self, data: Dict[str, Any]) -> Function:
        self._where = data.get("name", "?")
        type_params = self._build_type_params(data.get("type_params", []))
        self._type_params = [tp.name for tp in type_params]
        params = [Param(p["name"], self._type(p["type"]), idx) for idx, p in enumerate(data.get("params", []))]
        returns = data.get("returns", [])
        if isinstance(returns, str):
            returns = [returns]
        ret_types = [self._type(t) for t in returns]
        native = bool(data.get("native", False))
        body = None if native else self._build_block(data.get("body", []))
        func = Function(
            name=data["name"],
            module=self.module_id,
            params=params,
            ret_types=ret_types,
            body=body,
            type_params=type_params,
            acquires=list(data.get("acquires", [])),
            attributes={k: dict(v or {}) for k, v in data.get("attributes", {}).items()},
            is_public=bool(data.get("public", False)),
            line=data.get("line", 0),
        )
        self._type_params = []
        return func

    # =========================================================================
    # Statements
    # =========================================================================

    def _build_block(self, items: List[Any]) -> List[Stmt]:
        if not isinstance(items, list):
            raise self._fail(f"expected a list of statements, got {items!r}")
        return [self._build_stmt(item) for item in items]

    def _build_stmt(self, data: Dict[str, Any]) -> Stmt:
        if not isinstance(data, dict):
            raise self._fail(f"expected a statement object, got {data!r}")
        op = data.get("op")
        line = data.get("line", 0)

        if op == "let":
            names = data.get("names") or [data["name"]]
            value = self._build_expr(data["value"]) if "value" in data else None
            type_ann = self._type(data["type"]) if "type" in data else None
            return LetStmt(list(names), value, type_ann, line=line)

        if op == "unpack":
            fields = data["fields"]
            if isinstance(fields, dict):
                pairs = list(fields.items())
            else:
                pairs = [tuple(pair) for pair in fields]
            return UnpackStmt(
                self._qualify_name(data["struct"]),
                pairs,
                self._build_expr(data["value"]),
                [self._type(t) for t in data.get("type_args", [])],
                line=line,
            )

        if op == "assign":
            return AssignStmt(self._build_expr(data["target"]), self._build_expr(data["value"]), line=line)

        if op == "expr":
            return ExprStmt(self._build_expr(data["expr"]), line=line)

        if op == "return":
            if "value" in data:
                values = [self._build_expr(data["value"])]
            else:
                values = [self._build_expr(v) for v in data.get("values", [])]
            return ReturnStmt(values, line=line)

        if op == "abort":
            return AbortStmt(self._build_expr(data["code"]), line=line)

        if op == "if":
            else_body = self._build_block(data["else"]) if "else" in data else None
            return IfStmt(self._build_expr(data["cond"]), self._build_block(data["then"]), else_body, line=line)

        if op == "while":
            return WhileStmt(self._build_expr(data["cond"]), self._build_block(data["body"]), line=line)

        if op == "loop":
            return LoopStmt(self._build_block(data["body"]), line=line)

        if op == "break":
            return BreakStmt(line=line)

        if op == "continue":
            return ContinueStmt(line=line)

        raise self._fail(f"unknown statement op {op!r}")

    # =========================================================================
    # Expressions
    # =========================================================================

    def _build_expr(self, data: Any) -> Expr:
        if isinstance(data, bool):
            return Literal(data, "bool")
        if isinstance(data, int):
            return Literal(data, "int")
        if isinstance(data, str):
            if data.startswith("@"):
                return Literal(normalize_address(data), "address")
            return VarRef(data)
        if not isinstance(data, dict):
            raise self._fail(f"invalid expression {data!r}")

        if "var" in data:
            return VarRef(data["var"])
        if "copy" in data:
            return CopyVar(data["copy"])
        if "move" in data:
            return MoveVar(data["move"])
        if "lit" in data:
            return self._build_literal(data)
        if "bytes" in data:
            return Literal(bytes.fromhex(data["bytes"]), "bytes")
        if "borrow" in data:
            return Borrow(self._build_expr(data["borrow"]), bool(data.get("mut", False)))
        if "field" in data:
            return FieldAccess(self._build_expr(data["of"]), data["field"])
        if "deref" in data:
            return Deref(self._build_expr(data["deref"]))
        if "call" in data:
            callee = data["call"]
            if callee not in BUILTINS:
                callee = self._qualify_name(callee)
            return Call(
                callee,
                [self._build_expr(a) for a in data.get("args", [])],
                [self._type(t) for t in data.get("type_args", [])],
            )
        if "pack" in data:
            fields = data.get("fields", {})
            pairs = fields.items() if isinstance(fields, dict) else [tuple(p) for p in fields]
            return StructPack(
                self._qualify_name(data["pack"]),
                [(name, self._build_expr(value)) for name, value in pairs],
                [self._type(t) for t in data.get("type_args", [])],
            )
        if "binop" in data:
            return BinOp(data["binop"], self._build_expr(data["left"]), self._build_expr(data["right"]))
        if "not" in data:
            return UnaryOp("!", self._build_expr(data["not"]))
        if "vector" in data:
            element_type = self._type(data["type"]) if "type" in data else None
            return Vector([self._build_expr(e) for e in data["vector"]], element_type)
        if "cast" in data:
            return Cast(self._build_expr(data["cast"]), data["to"])

        raise self._fail(f"unknown expression {data!r}")

    def _build_literal(self, data: Dict[str, Any]) -> Literal:
        value = data["lit"]
        kind: Optional[str] = data.get("kind")
        if kind is None:
            if isinstance(value, bool):
                kind = "bool"
            elif isinstance(value, int):
                kind = "int"
            elif isinstance(value, str) and value.startswith("@"):
                kind = "address"
            else:
                raise self._fail(f"cannot infer literal kind of {value!r}")
        if kind == "address":
            value = normalize_address(value)
        elif kind in INTEGER_TYPES or kind == "int":
            value = int(value)
        return Literal(value, kind)


def load_modules(paths: Iterable[Union[str, Path]]) -> List[Module]:
    """Load every declaration file in paths."""
    modules: List[Module] = []
    for path in paths:
        modules.extend(DeclarationLoader().load_file(path))
    return modules
