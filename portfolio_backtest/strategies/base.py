"""
Strategy interface and the adapter that drives it.

**Conceptual**: This module defines the contract between user strategies and
the rolling-window engine. A strategy is a plain function that receives a
window of historical data (and, optionally, the weights currently held) and
returns a vector of portfolio weights, one per asset, in the window's asset
order. The engine never calls user code directly: it goes through a
StrategyAdapter, which
  - decides once, from the function's signature, whether to pass the current
    weights,
  - coerces whatever the function returns into a float vector,
  - checks length, finiteness and portfolio constraints, and
  - converts any exception raised anywhere in the call chain into a Fault
    (message, innermost call site, full stack text) instead of letting it
    unwind into the engine.

**Why a fault boundary instead of try/except in the engine?**
  - A strategy bug must never abort the other (strategy, dataset) pairs of a
    batch. Keeping the boundary in one place means every invocation path
    (in-memory functions, file-sourced functions, benchmarks) gets the same
    treatment and the same fault format.
"""

import inspect
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Optional, Protocol, Sequence

import numpy as np
import pandas as pd

from portfolio_backtest.utils.errors import StrategyFault


class StrategyFunction(Protocol):
    """
    Calling convention of a portfolio function.

    **Arguments**:
      - window: dict mapping field name -> DataFrame (rows = the lookback bars,
        oldest first; columns = assets). Contains the key "index" (a Series)
        when the dataset carries a market index.
      - w_current: numpy vector of the weights currently held (drifted with
        prices since the last rebalance; zeros before the first rebalance).
        Functions that do not declare this parameter are called without it.
        A second parameter with a default value (a tuning knob such as
        `shrinkage=0.5`) is left alone unless it is named `w_current`.

    **Returns**: a numeric vector (list, numpy array, or pandas Series indexed by
    asset) whose length equals the number of assets in the window. Weights are
    fractions of wealth; the un-invested remainder is held as cash. The engine
    does not normalize them.
    """

    def __call__(
        self,
        window: dict[str, pd.DataFrame],
        w_current: Optional[np.ndarray] = None,
    ) -> Sequence[float]:
        ...


@dataclass(frozen=True)
class Fault:
    """
    Structured record of a failed strategy step.

    Attributes:
        message: Human-readable error message.
        exception_type: Class name of the exception (e.g., "ZeroDivisionError").
        location: Innermost frame as "file:line in function" (where it was raised).
        stack: Full rendered traceback text.
        frames: Every frame of the call chain, outermost first.
        step: Timestamp of the rebalance at which the fault occurred (if known).
    """
    message: str
    exception_type: str
    location: str
    stack: str
    frames: tuple = ()
    step: Any = None

    @classmethod
    def from_exception(cls, exc: BaseException, step: Any = None) -> "Fault":
        """Capture message, call site and call stack of a caught exception."""
        extracted = traceback.extract_tb(exc.__traceback__)
        frames = tuple(f"{frame.filename}:{frame.lineno} in {frame.name}" for frame in extracted)
        location = frames[-1] if frames else "<unknown>"
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            message=str(exc) or type(exc).__name__,
            exception_type=type(exc).__name__,
            location=location,
            stack=stack,
            frames=frames,
            step=step,
        )

    def __str__(self) -> str:
        return f"{self.exception_type}: {self.message} (at {self.location})"


class Strategy:
    """
    A named strategy. Subclasses only need to provide `get_function()`.

    `name` is the display name, unique within a run.
    """

    name: str

    def get_function(self) -> Callable:
        raise NotImplementedError

    @property
    def call_kwargs(self) -> dict:
        return {}


@dataclass
class NamedStrategy(Strategy):
    """
    An in-memory portfolio function with a display name.

    Attributes:
        name: Display name (e.g., "GMVP" or the auto-assigned "fun1").
        func: The portfolio function (see StrategyFunction).
        kwargs: Extra keyword arguments forwarded on every invocation.
    """
    name: str
    func: Callable
    kwargs: dict = field(default_factory=dict)

    def get_function(self) -> Callable:
        return self.func

    @property
    def call_kwargs(self) -> dict:
        return self.kwargs


def current_weights_mode(func: Callable, supplied: Collection[str] = ()) -> Optional[str]:
    """
    Decide how (and whether) a function wants the current weights.

    A parameter named in `supplied` (the strategy's extra keyword arguments)
    is never bound to the current weights.

    Returns:
        "positional" if the second positional parameter is `w_current`, or is
        required and not supplied, or if the function takes *args after at most
        one named positional parameter;
        "keyword" if it accepts `w_current=` by name or via **kwargs;
        None if it only accepts the window.
    """
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        # No introspectable signature (some builtins/extensions): assume full convention
        return "positional"

    params = list(signature.parameters.values())
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    if len(positional) >= 2:
        second = positional[1]
        if second.name == "w_current" and second.name not in supplied:
            return "positional"
        if second.default is inspect.Parameter.empty and second.name not in supplied:
            return "positional"
    elif any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params):
        return "positional"

    w_current = signature.parameters.get("w_current")
    if w_current is not None and w_current.kind != inspect.Parameter.POSITIONAL_ONLY and "w_current" not in supplied:
        return "keyword"
    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in params) and "w_current" not in supplied:
        return "keyword"
    return None


def coerce_weights(raw: Any, assets: Sequence) -> np.ndarray:
    """
    Turn a strategy's return value into a float vector in asset order.

    pandas Series indexed by the window's assets are reordered to match the
    asset order; anything else is taken positionally.

    Raises:
        StrategyFault: If the value is None, not numeric, or not one-dimensional.
    """
    if raw is None:
        raise StrategyFault("Portfolio function returned None instead of a weights vector.")

    if isinstance(raw, pd.Series) and set(raw.index) == set(assets) and len(raw) == len(assets):
        raw = raw.reindex(list(assets))
    elif isinstance(raw, pd.DataFrame):
        raw = raw.to_numpy()

    try:
        weights = np.asarray(raw, dtype=float)
    except (TypeError, ValueError) as exc:
        raise StrategyFault(f"Portfolio function returned a non-numeric value: {exc}") from exc

    if weights.ndim > 1:
        weights = np.squeeze(weights)
    if weights.ndim == 0:
        weights = weights.reshape(1)
    if weights.ndim != 1:
        raise StrategyFault(
            f"Portfolio function must return a one-dimensional vector, got shape {weights.shape}."
        )
    return weights


def validate_weights(
    weights: np.ndarray,
    n_assets: int,
    shortselling: bool = True,
    leverage: float = np.inf,
) -> np.ndarray:
    """
    Check a weights vector before the engine uses it.

    Raises:
        StrategyFault: On wrong length, NaN/Inf entries, negative weights when
                       shortselling is disallowed, or sum(|w|) above leverage.
    """
    if len(weights) != n_assets:
        raise StrategyFault(
            f"Returned weights vector has length {len(weights)} but the window has {n_assets} assets."
        )
    if not np.all(np.isfinite(weights)):
        bad = np.flatnonzero(~np.isfinite(weights)).tolist()
        raise StrategyFault(
            f"Returned weights contain non-finite values at positions {bad[:5]} (showing first 5)."
        )
    if not shortselling and np.any(weights < -1e-8):
        raise StrategyFault("No-shortselling constraint not satisfied.")
    if np.abs(weights).sum() > leverage + 1e-8:
        raise StrategyFault("Leverage constraint not satisfied.")
    return weights


class StrategyAdapter:
    """
    Uniform, fault-isolated invocation of one strategy.

    **Conceptual**: The adapter is built once per (strategy, dataset) run. It
    resolves the strategy's function (loading it if it comes from a file),
    inspects its signature, and then serves every rebalance step through
    `propose()`, which never raises for strategy problems.

    Attributes:
        strategy: The Strategy being adapted.
        cpu_time: Accumulated CPU seconds spent inside the strategy.
    """

    def __init__(
        self,
        strategy: Strategy,
        shortselling: bool = True,
        leverage: float = np.inf,
        cpu_time_limit: Optional[float] = None,
    ):
        self.strategy = strategy
        self.shortselling = shortselling
        self.leverage = leverage
        self.cpu_time_limit = cpu_time_limit
        self.cpu_time = 0.0
        self._func = strategy.get_function()
        self._mode = current_weights_mode(self._func, supplied=strategy.call_kwargs)

    @property
    def name(self) -> str:
        return self.strategy.name

    def invoke(self, window: dict, w_current: np.ndarray) -> Any:
        """Call the strategy with the convention it declared (may raise)."""
        kwargs = dict(self.strategy.call_kwargs)
        if self._mode == "positional":
            return self._func(window, w_current, **kwargs)
        if self._mode == "keyword":
            return self._func(window, w_current=w_current, **kwargs)
        return self._func(window, **kwargs)

    def propose(
        self,
        window: dict,
        w_current: np.ndarray,
        assets: Sequence,
        step: Any = None,
    ) -> tuple[Optional[np.ndarray], Optional[Fault]]:
        """
        Ask the strategy for new weights, inside the fault boundary.

        Args:
            window: Field name -> DataFrame slice for this step.
            w_current: Currently held weights (a copy is passed to user code).
            assets: Asset identifiers of the window, in order.
            step: Rebalance timestamp, attached to any fault.

        Returns:
            (weights, None) on success or (None, fault) on any failure.
        """
        started = time.thread_time()
        try:
            raw = self.invoke(window, w_current.copy())
            elapsed = time.thread_time() - started
            if self.cpu_time_limit is not None and elapsed > self.cpu_time_limit:
                raise StrategyFault(
                    f"Time limit exceeded: invocation took {elapsed:.3f}s CPU "
                    f"(limit {self.cpu_time_limit}s)."
                )
            weights = coerce_weights(raw, assets)
            weights = validate_weights(
                weights,
                n_assets=len(assets),
                shortselling=self.shortselling,
                leverage=self.leverage,
            )
        except Exception as exc:
            self.cpu_time += time.thread_time() - started
            return None, Fault.from_exception(exc, step=step)

        self.cpu_time += time.thread_time() - started
        return weights, None
