"""Singletrack stores."""
from __future__ import annotations
import collections
import contextlib
import copy
import enum
import logging
from anyio import Event
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Deque,
    Dict,
    Generator,
    Generic,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
    cast,
)

from .errors import DispatchDepthError, StoreNotConfiguredError

ActionT = TypeVar("ActionT")
StateT = TypeVar("StateT")

ReducerT = Callable[[StateT, ActionT], StateT]
MiddlewareT = Callable[[StateT, ActionT], Any]
SubscriberT = Callable[[StateT], Any]
ActionTypeT = Union[Type[Any], Tuple[Type[Any], ...]]

log = logging.getLogger(__name__)


class Halt(enum.Enum):
    """Sentinel type a middleware returns to stop a dispatch."""

    HALT = "halt"


HALT = Halt.HALT


class SubscriptionStrategy(str, enum.Enum):
    """Message strategy to use for a subscription.

    Props:
        LATEST: Receive the latest state. Guarantees that the store's state
            will match the state in the notification, but may miss transitions.
        EVERY: Receive every state change. Guarantees that you will be notified
            of every state transition, but the store's state have transitioned
            again by the time the notification is handled.
    """

    LATEST = "latest"
    EVERY = "every"


class StateCell(Generic[StateT]):
    """Holder of a single state value.

    The cell never hands out or keeps a reference shared with its callers:
    both reads and writes go through a deep copy.

    Args:
        initial_state: Initial value. Defaults to an empty dict.
    """

    def __init__(self, initial_state: StateT = ...) -> None:  # type: ignore[assignment]
        if initial_state is Ellipsis:
            initial_state = cast(StateT, {})
        self._value: StateT = copy.deepcopy(initial_state)

    def get(self) -> StateT:
        """Get an independent copy of the current state."""
        return copy.deepcopy(self._value)

    def set(self, next_state: StateT) -> None:
        """Replace the current state, as-is."""
        self._value = copy.deepcopy(next_state)


class Subscription(AsyncIterator[StateT]):
    """A subscriber that exposes the states it receives as an async iterator.

    Once closed, the subscription ignores further states, and iteration
    stops after any already-queued states have been consumed.
    """

    def __init__(self, strategy: SubscriptionStrategy) -> None:
        self._strategy = strategy
        self._closed = False
        self._notification_event = Event()
        self._queue: Deque[StateT] = collections.deque(
            maxlen=1 if strategy == SubscriptionStrategy.LATEST else None
        )

    @property
    def closed(self) -> bool:
        """Whether the subscription has stopped accepting states."""
        return self._closed

    def __call__(self, state: StateT) -> None:
        if self._closed:
            return

        self._queue.append(state)
        self._notification_event.set()

    def close(self) -> None:
        """Stop accepting states and wake any waiting iterator."""
        self._closed = True
        self._notification_event.set()

    async def __anext__(self) -> StateT:
        while len(self._queue) == 0:
            if self._closed:
                raise StopAsyncIteration
            await self._notification_event.wait()
            self._notification_event = Event()

        return self._queue.popleft()

    def __aiter__(self) -> AsyncIterator[StateT]:
        return self


class Store(Generic[StateT, ActionT]):
    """A state store.

    Dispatching an action runs it through the middleware chain, then the
    reducer, then notifies every subscriber with the new state. Everything
    happens synchronously, on the caller's stack, before `dispatch` returns.

    Middleware and subscriber registries are append-only. The only way to
    clear them is `set_state_and_reducer`, which reinitializes the store.
    A subscription opened with `subscription` is unregistered when its
    context exits, once no dispatch is running.

    Args:
        initial_state: Initial state to use in the store. Defaults to an
            empty dict.
        reducer: Reducer to bind. Without one, the store cannot dispatch
            until `set_state_and_reducer` is called.
        action_type: If set, a middleware result that is not an instance of
            this type (or tuple of types) halts the dispatch.
        max_depth: If set, the maximum number of nested dispatches allowed,
            counting the outermost one.
    """

    def __init__(
        self,
        initial_state: StateT = ...,  # type: ignore[assignment]
        reducer: Optional[ReducerT[StateT, ActionT]] = None,
        *,
        action_type: Optional[ActionTypeT] = None,
        max_depth: Optional[int] = None,
    ) -> None:
        if max_depth is not None and max_depth < 1:
            raise ValueError(f"max_depth must be at least 1, got {max_depth}")

        self._cell: StateCell[StateT] = StateCell(initial_state)
        self._reducer: Optional[ReducerT[StateT, ActionT]] = None
        self._middleware: List[MiddlewareT[StateT, ActionT]] = []
        self._subscribers: List[SubscriberT[StateT]] = []
        self._action_type = action_type
        self._max_depth = max_depth
        self._depth = 0
        self._closed_subscriptions: List[Subscription[StateT]] = []

        if reducer is not None:
            _check_callable(reducer, "reducer")
            self._reducer = reducer

    @property
    def state(self) -> StateT:
        """An independent copy of the current state."""
        return self._cell.get()

    def get_state(self) -> StateT:
        """Get an independent copy of the current state."""
        return self._cell.get()

    @property
    def is_configured(self) -> bool:
        """Whether a reducer is bound and actions may be dispatched."""
        return self._reducer is not None

    @property
    def middleware(self) -> Tuple[MiddlewareT[StateT, ActionT], ...]:
        """Registered middleware, in chain order."""
        return tuple(self._middleware)

    @property
    def subscribers(self) -> Tuple[SubscriberT[StateT], ...]:
        """Registered subscribers, in notification order."""
        return tuple(self._subscribers)

    def set_state_and_reducer(
        self,
        initial_state: StateT,
        reducer: ReducerT[StateT, ActionT],
    ) -> None:
        """Reinitialize the store with a new state and reducer.

        This is a full reset: every registered middleware and subscriber
        is discarded, and must be registered again afterwards.

        Args:
            initial_state: State to replace the current state with.
            reducer: Reducer to bind in place of any current reducer.
        """
        _check_callable(reducer, "reducer")
        log.debug(
            "Reinitializing store; discarding %d middleware and %d subscribers",
            len(self._middleware),
            len(self._subscribers),
        )
        self._cell.set(initial_state)
        self._reducer = reducer
        self._middleware = []
        self._subscribers = []

    def add_middleware(self, middleware: MiddlewareT[StateT, ActionT]) -> None:
        """Append a middleware to the end of the chain.

        A middleware is called with the current state and the action, and
        returns the action to pass down the chain. Returning `HALT` or `None`
        stops the dispatch without calling the reducer or any subscriber.
        """
        _check_callable(middleware, "middleware")
        self._middleware.append(middleware)

    def subscribe(self, subscriber: SubscriberT[StateT]) -> None:
        """Append a subscriber, called with the new state after every dispatch."""
        _check_callable(subscriber, "subscriber")
        self._subscribers.append(subscriber)

    @contextlib.contextmanager
    def subscription(
        self,
        strategy: SubscriptionStrategy = SubscriptionStrategy.LATEST,
    ) -> Generator[Subscription[StateT], None, None]:
        """Create a subscription to receive state changes asynchronously.

        Args:
            strategy: whether to receive the latest state change (default)
                or every state change.

        Returns:
            A context manager wrapping a subscription. On exit the
            subscription is closed and unregistered; this is the only way
            a subscriber is ever removed from the store.
        """
        sub: Subscription[StateT] = Subscription(strategy=strategy)
        self.subscribe(sub)
        try:
            yield sub
        finally:
            sub.close()
            self._closed_subscriptions.append(sub)
            if self._depth == 0:
                self._prune_closed_subscriptions()

    def dispatch(self, action: ActionT) -> bool:
        """Dispatch an action into the store.

        Returns:
            True if the reducer ran and subscribers were notified, False if
            a middleware halted the dispatch.

        Raises:
            StoreNotConfiguredError: no reducer is bound.
            DispatchDepthError: nested dispatches exceeded `max_depth`.
        """
        if self._reducer is None:
            raise StoreNotConfiguredError(
                "Cannot dispatch without a reducer; use Store.set_state_and_reducer"
            )

        if self._max_depth is not None and self._depth >= self._max_depth:
            raise DispatchDepthError(
                f"Dispatch nested deeper than max_depth={self._max_depth}"
            )

        self._depth += 1
        try:
            return self._run_pipeline(action)
        except Exception:
            if self._depth == 1:
                log.debug("Dispatch of %r aborted", action, exc_info=True)
            raise
        finally:
            self._depth -= 1
            if self._depth == 0 and self._closed_subscriptions:
                self._prune_closed_subscriptions()

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "state":
            raise TypeError("Cannot overwrite state attribute.")
        super().__setattr__(name, value)

    def _run_pipeline(self, action: ActionT) -> bool:
        middleware = self._middleware
        index = 0

        # appends are seen; a reset swaps in a new list and ends the chain
        while middleware is self._middleware and index < len(middleware):
            result = middleware[index](self._cell.get(), action)

            if self._is_halt(result):
                log.debug("Middleware %d halted dispatch of %r", index, action)
                return False

            action = result
            index += 1

        reducer = cast(ReducerT[StateT, ActionT], self._reducer)
        next_state = reducer(self._cell.get(), action)
        self._cell.set(next_state)
        committed = self._cell.get()

        subscribers = self._subscribers
        index = 0
        while subscribers is self._subscribers and index < len(subscribers):
            subscriber = subscribers[index]
            index += 1

            if isinstance(subscriber, Subscription) and subscriber.closed:
                continue

            subscriber(copy.deepcopy(committed))

        return True

    def _is_halt(self, result: Any) -> bool:
        if result is None or result is HALT:
            return True

        return self._action_type is not None and not isinstance(
            result, self._action_type
        )

    def _prune_closed_subscriptions(self) -> None:
        closed = self._closed_subscriptions
        self._closed_subscriptions = []
        self._subscribers[:] = [
            subscriber
            for subscriber in self._subscribers
            if not any(subscriber is sub for sub in closed)
        ]


def _check_callable(value: Any, role: str) -> None:
    if not callable(value):
        raise TypeError(f"A {role} must be callable, got {type(value).__name__}")


def combine_reducers(
    **reducers: Callable[[Any, ActionT], Any],
) -> Callable[[Mapping[str, Any], ActionT], Dict[str, Any]]:
    '''Combine reducers of substates into a reducer of a mapping state.

    Each reducer receives, and replaces, the value under its own name.
    Keys without a reducer are carried over unchanged, and a missing key
    is passed to its reducer as `None`.

    Args:
        **reducers: Substate reducers, by substate name.

    Example:
        ```python
        def counter(state: Optional[int], action: str) -> int:
            count = state or 0
            return count + 1 if action == "increment" else count

        def mirror(state: Optional[int], action: str) -> int:
            count = state or 0
            return count - 1 if action == "increment" else count

        store = Store({"counter": 0, "mirror": 0}, combine_reducers(
            counter=counter,
            mirror=mirror,
        ))
        ```
    '''

    def _combined(state: Mapping[str, Any], action: ActionT) -> Dict[str, Any]:
        if not isinstance(state, Mapping):
            raise TypeError(
                f"Combined reducers require a mapping state, got {type(state).__name__}"
            )

        next_state = dict(state)

        for name, substate_reducer in reducers.items():
            next_state[name] = substate_reducer(state.get(name), action)

        return next_state

    return _combined
