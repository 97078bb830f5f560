"""
Type Descriptor Resolver.

Resolves generic instantiations into canonical descriptors and answers field
layout queries for them. Nested generics are handled by substituting the
outer instantiation's arguments into every field type before use, so the
fields of `AnotherParamStruct<u64>` come back as `ParamStruct<u64>`, etc.

Pure over declarations: the only state is a memo table keyed by canonical
descriptor, which cannot go stale because declarations are immutable once
loaded.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

from core.diagnostics import Location
from core.utils import debug
from move.ir import StructDecl
from move.types import (
    PrimitiveType,
    RefType,
    StructType,
    TupleType,
    Type,
    TypeParam,
    VectorType,
    substitute,
)

if TYPE_CHECKING:
    from core.context import ProjectContext


FieldLayout = List[Tuple[str, Type]]


class TypeResolver:
    def __init__(self, ctx: "ProjectContext"):
        self.ctx = ctx
        self._field_cache: Dict[StructType, FieldLayout] = {}

    # -------------------------------------------------------------------------
    # Instantiation
    # -------------------------------------------------------------------------

    def decl_of(self, t: StructType) -> Optional[StructDecl]:
        return self.ctx.get_struct(t.qualified_name)

    def instantiate(
        self,
        struct_fqn: str,
        type_args: List[Type],
        location: Location,
    ) -> Optional[StructType]:
        """
        Build the descriptor for `struct_fqn<type_args>`.

        Reports UnknownName / ArityMismatch and returns None on failure.
        """
        decl = self.ctx.get_struct(struct_fqn)
        if decl is None:
            self.ctx.report("UnknownName", f"Unknown struct '{struct_fqn}'", location)
            return None
        if len(type_args) != len(decl.type_params):
            self.ctx.report(
                "ArityMismatch",
                f"'{struct_fqn}' expects {len(decl.type_params)} type argument(s), got {len(type_args)}",
                location,
            )
            return None
        return StructType(decl.module, decl.name, tuple(type_args))

    def field_types(self, t: StructType) -> FieldLayout:
        """
        Field layout of an instantiation, with the outer type arguments substituted.

        Raises KeyError for unknown structs; callers validate descriptors first.
        """
        cached = self._field_cache.get(t)
        if cached is not None:
            return cached
        decl = self.decl_of(t)
        if decl is None:
            raise KeyError(t.qualified_name)
        mapping = {tp.name: arg for tp, arg in zip(decl.type_params, t.type_args)}
        layout = [(f.name, substitute(f.typ, mapping)) for f in decl.fields]
        self._field_cache[t] = layout
        debug(f"Resolved layout of {t}: {', '.join(f'{n}: {ft}' for n, ft in layout)}")
        return layout

    def field_type(self, t: StructType, field_name: str) -> Optional[Type]:
        for name, ft in self.field_types(t):
            if name == field_name:
                return ft
        return None

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_type(
        self,
        t: Type,
        bound: Iterable[str],
        location: Location,
        allow_references: bool = True,
    ) -> bool:
        """
        Check that every struct in t exists with the right arity and that every
        type parameter is bound by the enclosing generic context.
        """
        bound_set = set(bound)
        return self._validate(t, bound_set, location, allow_references, top=True)

    def _validate(self, t: Type, bound: Set[str], location: Location, allow_refs: bool, top: bool) -> bool:
        if isinstance(t, PrimitiveType):
            return True
        if isinstance(t, TypeParam):
            if t.name not in bound:
                self.ctx.report(
                    "UnboundTypeParameter",
                    f"Type parameter '{t.name}' is not bound here",
                    location,
                )
                return False
            return True
        if isinstance(t, VectorType):
            return self._validate(t.element, bound, location, False, top=False)
        if isinstance(t, RefType):
            if not (allow_refs and top):
                self.ctx.report("TypeMismatch", f"Reference type '{t}' not allowed in this position", location)
                return False
            return self._validate(t.referent, bound, location, False, top=False)
        if isinstance(t, TupleType):
            return all(self._validate(e, bound, location, allow_refs, top=True) for e in t.elements)
        if isinstance(t, StructType):
            ok = True
            for arg in t.type_args:
                ok = self._validate(arg, bound, location, False, top=False) and ok
            if self.instantiate(t.qualified_name, list(t.type_args), location) is None:
                return False
            return ok
        return True

    def check_struct_decl(self, decl: StructDecl) -> None:
        """Validate field types of a declaration against its own type parameters."""
        location = Location(decl.module, declaration=decl.name, line=decl.line)
        bound = [tp.name for tp in decl.type_params]
        phantoms = {tp.name for tp in decl.type_params if tp.phantom}
        seen: Set[str] = set()
        for f in decl.fields:
            if f.name in seen:
                self.ctx.report("TypeMismatch", f"Duplicate field '{f.name}' in '{decl.name}'", location)
            seen.add(f.name)
            if not self.validate_type(f.typ, bound, location, allow_references=False):
                continue
            for name in self.non_phantom_params(f.typ) & phantoms:
                self.ctx.report(
                    "InvalidPhantomUse",
                    f"Phantom parameter '{name}' used in field '{f.name}' of '{decl.name}'",
                    location,
                )

    def non_phantom_params(self, t: Type) -> Set[str]:
        """Type parameters occurring in t outside phantom argument positions."""
        if isinstance(t, TypeParam):
            return {t.name}
        if isinstance(t, VectorType):
            return self.non_phantom_params(t.element)
        if isinstance(t, RefType):
            return self.non_phantom_params(t.referent)
        if isinstance(t, StructType):
            decl = self.decl_of(t)
            result: Set[str] = set()
            for idx, arg in enumerate(t.type_args):
                if decl is not None and idx < len(decl.type_params) and decl.type_params[idx].phantom:
                    continue
                result |= self.non_phantom_params(arg)
            return result
        return set()
