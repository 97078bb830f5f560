"""
Ability Checker.

Abilities are computed by a recursive formula over type descriptors rather
than a fixed table:

- primitives have copy, drop, store (signer has only drop)
- vector<T> has whatever of copy/drop/store T has
- references have copy and drop
- a type parameter has its declared constraints
- S<T1..Tn> has ability a iff S declares a and every non-phantom Ti has a
  (for key, every non-phantom Ti must have store)

The effective set of an instantiation is therefore recomputed at every use
site from its arguments. Results are memoized per (descriptor, parameter
environment) inside the checker, which lives as long as one checking context.
"""

from typing import Dict, FrozenSet, List, Optional, Tuple, TYPE_CHECKING

from core.diagnostics import Location
from core.utils import debug
from move.ir import StructDecl, TypeParamDecl
from move.types import (
    ALL_ABILITIES,
    NO_ABILITIES,
    Ability,
    AbilitySet,
    PrimitiveType,
    RefType,
    StructType,
    TupleType,
    Type,
    TypeParam,
    VectorType,
    format_abilities,
)

if TYPE_CHECKING:
    from core.context import ProjectContext


# Type parameter name -> abilities assumed for it
AbilityEnv = Dict[str, AbilitySet]

PRIMITIVE_ABILITIES: AbilitySet = frozenset({Ability.COPY, Ability.DROP, Ability.STORE})
SIGNER_ABILITIES: AbilitySet = frozenset({Ability.DROP})
REFERENCE_ABILITIES: AbilitySet = frozenset({Ability.COPY, Ability.DROP})
VECTOR_MASK: AbilitySet = frozenset({Ability.COPY, Ability.DROP, Ability.STORE})
# A tuple is never stored; it can be copied or dropped when every element can
TUPLE_MASK: AbilitySet = frozenset({Ability.COPY, Ability.DROP})


def required_field_ability(ability: Ability) -> Ability:
    """Ability every field (or type argument) must have for the container to have `ability`."""
    return Ability.STORE if ability is Ability.KEY else ability


def env_from_params(type_params: List[TypeParamDecl]) -> AbilityEnv:
    return {tp.name: tp.constraints for tp in type_params}


class AbilityChecker:
    def __init__(self, ctx: "ProjectContext"):
        self.ctx = ctx
        self._memo: Dict[Tuple[Type, FrozenSet], AbilitySet] = {}

    # -------------------------------------------------------------------------
    # The formula
    # -------------------------------------------------------------------------

    def abilities_of(self, t: Type, env: Optional[AbilityEnv] = None) -> AbilitySet:
        env = env or {}
        key = (t, frozenset(env.items()))
        cached = self._memo.get(key)
        if cached is not None:
            return cached
        result = self._compute(t, env)
        self._memo[key] = result
        return result

    def _compute(self, t: Type, env: AbilityEnv) -> AbilitySet:
        if isinstance(t, PrimitiveType):
            return SIGNER_ABILITIES if t.name == "signer" else PRIMITIVE_ABILITIES
        if isinstance(t, VectorType):
            return self.abilities_of(t.element, env) & VECTOR_MASK
        if isinstance(t, RefType):
            return REFERENCE_ABILITIES
        if isinstance(t, TypeParam):
            return env.get(t.name, NO_ABILITIES)
        if isinstance(t, TupleType):
            result = TUPLE_MASK
            for elem in t.elements:
                result = result & self.abilities_of(elem, env)
            return result
        if isinstance(t, StructType):
            decl = self.ctx.get_struct(t.qualified_name)
            if decl is None:
                return NO_ABILITIES
            result = set()
            for ability in decl.abilities:
                needed = required_field_ability(ability)
                if all(
                    needed in self.abilities_of(arg, env)
                    for tp, arg in zip(decl.type_params, t.type_args)
                    if not tp.phantom
                ):
                    result.add(ability)
            return frozenset(result)
        return NO_ABILITIES

    def has(self, t: Type, ability: Ability, env: Optional[AbilityEnv] = None) -> bool:
        return ability in self.abilities_of(t, env)

    # -------------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------------

    def derivable_abilities(self, decl: StructDecl) -> AbilitySet:
        """
        Maximal ability set the declaration could claim given its fields.

        Type parameters are assumed to have every ability: whatever they lack
        is subtracted per instantiation by the formula above.
        """
        env = {tp.name: ALL_ABILITIES for tp in decl.type_params}
        result = set()
        for ability in Ability:
            needed = required_field_ability(ability)
            if all(needed in self.abilities_of(f.typ, env) for f in decl.fields):
                result.add(ability)
        return frozenset(result)

    def check_struct_decl(self, decl: StructDecl) -> bool:
        """Reject declared abilities that exceed what the fields allow."""
        location = Location(decl.module, declaration=decl.name, line=decl.line)
        env = {tp.name: ALL_ABILITIES for tp in decl.type_params}
        ok = True
        for ability in sorted(decl.abilities, key=lambda a: a.value):
            needed = required_field_ability(ability)
            for f in decl.fields:
                if needed not in self.abilities_of(f.typ, env):
                    self.ctx.report(
                        "AbilityViolation",
                        f"'{decl.name}' declares '{ability}' but field '{f.name}: {f.typ}' lacks '{needed}'",
                        location,
                        notes=[f"field abilities: {format_abilities(self.abilities_of(f.typ, env))}"],
                    )
                    ok = False
        debug(f"Abilities of {decl.qualified_name}: {format_abilities(decl.abilities)} (ok={ok})")
        return ok

    # -------------------------------------------------------------------------
    # Instantiation sites
    # -------------------------------------------------------------------------

    def check_constraints(
        self,
        owner: str,
        type_params: List[TypeParamDecl],
        type_args: List[Type],
        env: AbilityEnv,
        location: Location,
    ) -> bool:
        """Each type argument must satisfy the constraints of its parameter."""
        ok = True
        for tp, arg in zip(type_params, type_args):
            missing = tp.constraints - self.abilities_of(arg, env)
            if missing:
                self.ctx.report(
                    "AbilityViolation",
                    f"Type argument '{arg}' for '{tp.name}' of '{owner}' lacks {format_abilities(missing)}",
                    location,
                )
                ok = False
        return ok

    def check_instantiation(self, t: Type, env: AbilityEnv, location: Location) -> bool:
        """Walk t and check the constraints of every struct instantiation inside it."""
        if isinstance(t, VectorType):
            return self.check_instantiation(t.element, env, location)
        if isinstance(t, RefType):
            return self.check_instantiation(t.referent, env, location)
        if isinstance(t, TupleType):
            return all([self.check_instantiation(e, env, location) for e in t.elements])
        if isinstance(t, StructType):
            decl = self.ctx.get_struct(t.qualified_name)
            if decl is None:
                return False
            ok = all([self.check_instantiation(a, env, location) for a in t.type_args])
            return self.check_constraints(t.qualified_name, decl.type_params, list(t.type_args), env, location) and ok
        return True

    def require(self, t: Type, ability: Ability, env: AbilityEnv, location: Location, what: str) -> bool:
        """Report AbilityViolation unless t has ability."""
        if self.has(t, ability, env):
            return True
        self.ctx.report(
            "AbilityViolation",
            f"{what} requires '{ability}' but '{t}' has {format_abilities(self.abilities_of(t, env))}",
            location,
        )
        return False
