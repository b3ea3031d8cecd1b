"""
Callback dispatching.

Callbacks registered with a Backoff only declare the parameters they care
about. Each callback's signature is read once, when it's registered, and on
each call the available values are matched to its parameters:

1. by parameter name (e.g. ``result``, ``log``, ``logs``, ``will_retry``)
2. by annotated type (e.g. ``def on_error(error: ConnectionError)``)
3. unannotated parameters without a default take the next unused value,
   unless their name is reserved for a value that isn't on offer this time
4. otherwise the parameter's default is used

A callback that has a required parameter none of the values can satisfy is
skipped.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import AbstractSet, Any, Callable, Iterable, Optional, Sequence, get_origin

from .errors import BackoffInitialisationError

logger = logging.getLogger(__name__)

LOG_PREFIX = "[retry_backoff.dispatch]"

_POSITIONAL_KINDS = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)
_VARIADIC_KINDS = (
    inspect.Parameter.VAR_POSITIONAL,
    inspect.Parameter.VAR_KEYWORD,
)


@dataclass(frozen=True)
class Argument:
    """A value offered to callbacks, and the parameter names it answers to"""

    names: tuple[str, ...]
    value: Any


@dataclass(frozen=True)
class ParamRequirement:
    """What a callback's parameter expects"""

    name: str
    kind: inspect._ParameterKind
    annotation: Optional[type] = None
    has_default: bool = False

    def accepts_type(self, value: Any) -> bool:
        if self.annotation is None:
            return False
        # bool is an int, but a flag shouldn't be handed to an int parameter
        if isinstance(value, bool) and self.annotation is not bool:
            return False
        return isinstance(value, self.annotation)


@dataclass(frozen=True)
class CallbackSpec:
    """A callback, with its parameter requirements read up-front"""

    callback: Callable[..., Any]
    params: Optional[tuple[ParamRequirement, ...]]
    """None when the signature couldn't be read, the callback is called with no arguments"""

    @classmethod
    def from_callable(cls, callback: Callable[..., Any]) -> "CallbackSpec":
        if not callable(callback):
            raise BackoffInitialisationError.invalid_callback(callback)
        return cls(callback=callback, params=_read_params(callback))

    def resolve(
        self,
        arguments: Sequence[Argument],
        reserved: AbstractSet[str] = frozenset(),
    ) -> Optional[tuple[list[Any], dict[str, Any]]]:
        """
        Work out the args/kwargs to call the callback with.

        Args:
            arguments: The values on offer
            reserved: Names of values that are sometimes offered, and never stand in for each other

        Returns:
            (args, kwargs), or None when the callback can't be satisfied
        """
        if self.params is None:
            return [], {}

        used: set[int] = set()
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        positional_gap = False

        for param in self.params:
            index = _pick(param, arguments, used, reserved)

            if index is None:
                if not param.has_default:
                    return None
                if param.kind == inspect.Parameter.POSITIONAL_ONLY:
                    positional_gap = True
                continue

            used.add(index)
            value = arguments[index].value
            if param.kind == inspect.Parameter.POSITIONAL_ONLY:
                if positional_gap:
                    # can't skip over an earlier positional-only default
                    return None
                args.append(value)
            else:
                kwargs[param.name] = value

        return args, kwargs


def _read_params(callback: Callable[..., Any]) -> Optional[tuple[ParamRequirement, ...]]:
    try:
        signature = inspect.signature(callback, eval_str=True)
    except (AttributeError, NameError, SyntaxError, TypeError):
        try:
            signature = inspect.signature(callback)
        except (TypeError, ValueError):
            return None
    except ValueError:
        return None

    params = []
    for parameter in signature.parameters.values():
        if parameter.kind in _VARIADIC_KINDS:
            continue
        annotation = parameter.annotation
        # parameterised generics like list[int] can't be used with isinstance()
        if (
            annotation is inspect.Parameter.empty
            or annotation is Any
            or not isinstance(annotation, type)
            or get_origin(annotation) is not None
        ):
            annotation = None
        params.append(ParamRequirement(
            name=parameter.name,
            kind=parameter.kind,
            annotation=annotation,
            has_default=parameter.default is not inspect.Parameter.empty,
        ))
    return tuple(params)


def _pick(
    param: ParamRequirement,
    arguments: Sequence[Argument],
    used: set[int],
    reserved: AbstractSet[str],
) -> Optional[int]:
    if param.kind != inspect.Parameter.POSITIONAL_ONLY:
        for index, argument in enumerate(arguments):
            if index not in used and param.name in argument.names:
                return index

    if param.annotation is not None:
        for index, argument in enumerate(arguments):
            if index not in used and param.accepts_type(argument.value):
                return index
        return None

    if param.has_default:
        return None

    # e.g. a "log" parameter must not be handed the "logs" tuple
    if param.kind != inspect.Parameter.POSITIONAL_ONLY and param.name in reserved:
        return None

    for index in range(len(arguments)):
        if index not in used:
            return index
    return None


def flatten_callbacks(*callbacks: Any) -> list[Callable[..., Any]]:
    """
    Flatten callbacks given individually or in (nested) lists.

    Raises:
        BackoffInitialisationError: When something other than a callable is found
    """
    flattened: list[Callable[..., Any]] = []
    for callback in callbacks:
        if isinstance(callback, (list, tuple)):
            flattened.extend(flatten_callbacks(*callback))
        elif callable(callback):
            flattened.append(callback)
        else:
            raise BackoffInitialisationError.invalid_callback(callback)
    return flattened


def call_if_possible(
    spec: CallbackSpec,
    arguments: Sequence[Argument],
    reserved: AbstractSet[str] = frozenset(),
) -> tuple[bool, Any]:
    """
    Call the callback when its parameters can be satisfied.

    Returns:
        (whether it was called, what it returned)
    """
    resolved = spec.resolve(arguments, reserved)
    if resolved is None:
        logger.debug(f"{LOG_PREFIX} call_if_possible: skipping {_describe(spec.callback)}, parameters can't be satisfied")
        return False, None

    args, kwargs = resolved
    return True, spec.callback(*args, **kwargs)


def dispatch(
    callbacks: Iterable[CallbackSpec],
    arguments: Sequence[Argument],
    reserved: AbstractSet[str] = frozenset(),
) -> int:
    """
    Call each callback in order. Exceptions raised by a callback propagate straight away.

    Returns:
        The number of callbacks that were called
    """
    called = 0
    for spec in callbacks:
        was_called, _ = call_if_possible(spec, arguments, reserved)
        if was_called:
            called += 1
    return called


def _describe(callback: Callable[..., Any]) -> str:
    return getattr(callback, "__qualname__", None) or repr(callback)
