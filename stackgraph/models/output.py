"""
Deferred values.

An ``Output`` stands for a value that only becomes known once the resources it
references have been provisioned. Outputs compose (``apply``, ``then``,
``all``, ``concat``, ``format``, item lookup) without resolving anything; the
resulting tree is walked twice:

* at construction time, through ``references()``, to derive dependency edges;
* at resolution time, through ``resolve(ctx)`` (suspends until every
  referenced resource has settled) or ``peek(ctx)`` (never waits, returns
  ``UNKNOWN`` while anything is still pending).

``ctx`` is any object with ``async wait(name) -> Mapping`` and
``peek(name) -> Optional[Mapping]``; see ``stackgraph.engine.context``.
"""
from typing import Any, Callable, Iterator, List, Sequence

from stackgraph.models.errors import MissingOutputError


class _Unknown:
    """Placeholder for a value that is not known yet."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<computed>"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


class Output:
    is_secret = False

    # ---------------------------------------------------------------- protocol
    def references(self) -> Iterator["Reference"]:
        raise NotImplementedError

    async def resolve(self, ctx) -> Any:
        raise NotImplementedError

    def peek(self, ctx) -> Any:
        raise NotImplementedError

    # ---------------------------------------------------------------- composition
    def apply(self, fn: Callable[[Any], Any]) -> "Output":
        """Return a new Output holding ``fn(value)``."""
        return _Derived((self,), lambda values: fn(values[0]))

    map = apply

    def then(self, fn: Callable[[Any], Any]) -> "Output":
        """Like ``apply`` but ``fn`` may itself return an Output, which is flattened."""
        return _Derived((self,), lambda values: fn(values[0]), flatten=True)

    def __getitem__(self, key: Any) -> "Output":
        return self.apply(lambda value: value[key])

    def __iter__(self):
        raise TypeError("Output is not iterable; use .apply() to work with its value")

    # ---------------------------------------------------------------- constructors
    @staticmethod
    def from_value(value: Any) -> "Output":
        return _Known(value)

    @staticmethod
    def secret(value: Any) -> "Output":
        if isinstance(value, Output):
            return _Derived((value,), lambda values: values[0], secret=True)
        return _Known(value, secret=True)

    @staticmethod
    def from_input(value: Any) -> "Output":
        """Lift a plain value, an Output, or a list/dict nesting Outputs into one Output."""
        if isinstance(value, Output):
            return value
        if contains_outputs(value):
            return _Structure(value)
        return _Known(value)

    @staticmethod
    def all(*values: Any, **named: Any) -> "Output":
        """
        Combine several values into a single Output.

        Positional values give a list, keyword values give a dict.
        """
        if named and values:
            raise TypeError("Output.all() takes positional or keyword values, not both")
        if named:
            keys = list(named)
            parents = tuple(Output.from_input(named[k]) for k in keys)
            return _Derived(parents, lambda vals: dict(zip(keys, vals)))
        parents = tuple(Output.from_input(v) for v in values)
        return _Derived(parents, list)

    @staticmethod
    def concat(*parts: Any) -> "Output":
        parents = tuple(Output.from_input(p) for p in parts)
        return _Derived(parents, lambda vals: "".join(str(v) for v in vals))

    @staticmethod
    def format(template: str, *args: Any, **kwargs: Any) -> "Output":
        keys = list(kwargs)
        parents = tuple(Output.from_input(a) for a in args) + tuple(
            Output.from_input(kwargs[k]) for k in keys
        )
        split = len(args)

        def _render(vals: List[Any]) -> str:
            return template.format(*vals[:split], **dict(zip(keys, vals[split:])))

        return _Derived(parents, _render)


interpolate = Output.concat


class _Known(Output):
    def __init__(self, value: Any, secret: bool = False):
        self.value = value
        self.is_secret = secret

    def references(self) -> Iterator["Reference"]:
        return iter(())

    async def resolve(self, ctx) -> Any:
        return self.value

    def peek(self, ctx) -> Any:
        return self.value

    def __repr__(self) -> str:
        return "Output([secret])" if self.is_secret else f"Output({self.value!r})"


class Reference(Output):
    """
    Leaf of every Output tree: attribute ``attribute`` of resource ``resource``.

    ``owner`` is the stack whose handle produced the reference; references
    built by name with ``ref()`` have no owner and are bound at build time.
    """

    def __init__(self, resource: str, attribute: str, owner: Any = None, secret: bool = False):
        self.resource = resource
        self.attribute = attribute
        self.owner = owner
        self.is_secret = secret

    def references(self) -> Iterator["Reference"]:
        yield self

    async def resolve(self, ctx) -> Any:
        outputs = await ctx.wait(self.resource)
        if self.attribute not in outputs:
            raise MissingOutputError(self.resource, self.attribute)
        return outputs[self.attribute]

    def peek(self, ctx) -> Any:
        outputs = ctx.peek(self.resource)
        if outputs is None or self.attribute not in outputs:
            return UNKNOWN
        return outputs[self.attribute]

    def __repr__(self) -> str:
        return f"Reference({self.resource}.{self.attribute})"


class _Derived(Output):
    def __init__(
        self,
        parents: Sequence[Output],
        fn: Callable[[List[Any]], Any],
        flatten: bool = False,
        secret: bool = False,
    ):
        self.parents = tuple(parents)
        self.fn = fn
        self.flatten = flatten
        self.is_secret = secret or any(p.is_secret for p in self.parents)

    def references(self) -> Iterator["Reference"]:
        for parent in self.parents:
            yield from parent.references()

    async def resolve(self, ctx) -> Any:
        values = [await parent.resolve(ctx) for parent in self.parents]
        result = self.fn(values)
        if self.flatten and isinstance(result, Output):
            return await result.resolve(ctx)
        return result

    def peek(self, ctx) -> Any:
        values = [parent.peek(ctx) for parent in self.parents]
        if any(v is UNKNOWN for v in values):
            return UNKNOWN
        try:
            result = self.fn(values)
        except Exception:
            # reported as a ResolutionError when the value is resolved
            return UNKNOWN
        if self.flatten and isinstance(result, Output):
            return result.peek(ctx)
        return result

    def __repr__(self) -> str:
        return f"Output(<derived from {len(self.parents)}>)"


class _Structure(Output):
    def __init__(self, template: Any):
        self.template = template
        self.is_secret = any(o.is_secret for o in _iter_outputs(template))

    def references(self) -> Iterator["Reference"]:
        return iter_references(self.template)

    async def resolve(self, ctx) -> Any:
        return await resolve_nested(self.template, ctx)

    def peek(self, ctx) -> Any:
        value = peek_nested(self.template, ctx)
        return value if is_known(value) else UNKNOWN


def ref(resource: str, attribute: str) -> Reference:
    """Reference an attribute of a resource by logical name, declared before or after."""
    return Reference(resource, attribute)


# ---------------------------------------------------------------- nested inputs
def _iter_outputs(value: Any) -> Iterator[Output]:
    if isinstance(value, Output):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_outputs(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_outputs(item)


def contains_outputs(value: Any) -> bool:
    return next(_iter_outputs(value), None) is not None


def contains_secrets(value: Any) -> bool:
    return any(o.is_secret for o in _iter_outputs(value))


def iter_references(value: Any) -> Iterator[Reference]:
    """Recursively scan a value (dicts, lists, Outputs) for resource references."""
    for out in _iter_outputs(value):
        yield from out.references()


async def resolve_nested(value: Any, ctx) -> Any:
    if isinstance(value, Output):
        return await value.resolve(ctx)
    if isinstance(value, dict):
        return {k: await resolve_nested(v, ctx) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [await resolve_nested(item, ctx) for item in value]
    return value


def peek_nested(value: Any, ctx) -> Any:
    """
    Best-effort view of a value without waiting.

    Unlike ``Output.peek`` a structure is never collapsed to ``UNKNOWN`` as a
    whole; only the individual pending Outputs are.
    """
    if isinstance(value, Output):
        return value.peek(ctx)
    if isinstance(value, dict):
        return {k: peek_nested(v, ctx) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [peek_nested(item, ctx) for item in value]
    return value


def is_known(value: Any) -> bool:
    """True if a peeked value contains no ``UNKNOWN`` placeholder."""
    if value is UNKNOWN:
        return False
    if isinstance(value, dict):
        return all(is_known(v) for v in value.values())
    if isinstance(value, list):
        return all(is_known(v) for v in value)
    return True

