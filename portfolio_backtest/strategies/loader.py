"""
Loading portfolio functions from standalone Python files.

**Conceptual**: Competitions and team comparisons usually collect one strategy
per file, every file exposing a function with the same name, `portfolio_fun`.
Those files routinely define helpers with the same names (`estimate_mu`,
`project`, ...) that behave differently. Executing them all into one namespace
would let the last file silently replace everybody else's helpers, so each file
is executed in its own fresh module object:
  - the module is created with importlib from the file path under a unique
    synthetic name and is never registered in sys.modules,
  - its imports and helpers live only in that module's globals,
  - only the resolved `portfolio_fun` handle is exposed to the caller.

`isolated=False` keeps the old behaviour of executing every file into one
shared namespace. It exists for strategy collections that rely on it (e.g. a
common helpers file loaded first) and is otherwise not recommended.

File strategies pickle by path: the loaded function is dropped and re-loaded
lazily in the receiving process, which is what lets them run in process pools.
"""

import builtins
import importlib.util
import logging
import uuid
from pathlib import Path
from typing import Callable, Optional, Sequence

from portfolio_backtest.strategies.base import Strategy
from portfolio_backtest.utils.errors import StrategyLoadError

logger = logging.getLogger(__name__)

ENTRY_POINT = "portfolio_fun"


def _resolve_entry_point(namespace: dict, entry_point: str, path: Path) -> Callable:
    func = namespace.get(entry_point)
    if func is None:
        raise StrategyLoadError(
            f"Strategy file '{path}' does not define a function named '{entry_point}'."
        )
    if not callable(func):
        raise StrategyLoadError(
            f"'{entry_point}' in strategy file '{path}' is not callable "
            f"(got {type(func).__name__})."
        )
    return func


def load_strategy_file(path: str | Path, entry_point: str = ENTRY_POINT) -> Callable:
    """
    Execute a strategy file in a fresh, private module and return its entry point.

    Args:
        path: Path to a .py file defining `portfolio_fun`.
        entry_point: Name of the function to look up after loading.

    Returns:
        The portfolio function defined by the file.

    Raises:
        StrategyLoadError: If the file is missing, fails while executing, or
                           does not define a callable entry point.
    """
    path = Path(path)
    if not path.is_file():
        raise StrategyLoadError(f"Strategy file not found: {path}")

    module_name = f"_portfolio_backtest_strategy_{path.stem}_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise StrategyLoadError(f"Cannot create a module spec for strategy file: {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise StrategyLoadError(
            f"Failed to load strategy file '{path}': {type(exc).__name__}: {exc}"
        ) from exc

    return _resolve_entry_point(vars(module), entry_point, path)


def load_into_shared_namespace(
    paths: Sequence[str | Path],
    entry_point: str = ENTRY_POINT,
    namespace: Optional[dict] = None,
) -> list[Callable]:
    """
    Execute files one after another into a single namespace.

    The entry point is captured right after each file runs, so every file still
    gets its own `portfolio_fun`; helpers, however, are shared and the last
    definition wins.

    Returns:
        One entry-point function per path, in order.
    """
    if namespace is None:
        namespace = {"__name__": "_portfolio_backtest_shared", "__builtins__": builtins}

    functions = []
    for path in map(Path, paths):
        if not path.is_file():
            raise StrategyLoadError(f"Strategy file not found: {path}")
        try:
            code = compile(path.read_text(), str(path), "exec")
            exec(code, namespace)
        except Exception as exc:
            raise StrategyLoadError(
                f"Failed to load strategy file '{path}': {type(exc).__name__}: {exc}"
            ) from exc
        functions.append(_resolve_entry_point(namespace, entry_point, path))
        # Drop it so a later file that forgets to define one is detected
        namespace.pop(entry_point, None)
    return functions


class FileStrategy(Strategy):
    """
    A strategy sourced from a file, loaded lazily and picklable by path.

    Attributes:
        name: Display name (defaults to the file stem).
        path: Source file.
        entry_point: Function name looked up after loading.
        shared_paths: For shared-namespace loading, every file of the collection
                      in load order (this file included). Empty when isolated.
    """

    def __init__(
        self,
        path: str | Path,
        name: Optional[str] = None,
        entry_point: str = ENTRY_POINT,
        shared_paths: Sequence[str | Path] = (),
        kwargs: Optional[dict] = None,
    ):
        self.path = Path(path)
        self.name = name or self.path.stem
        self.entry_point = entry_point
        self.shared_paths = tuple(Path(p) for p in shared_paths)
        self.kwargs = dict(kwargs or {})
        self._func: Optional[Callable] = None

    @property
    def isolated(self) -> bool:
        return not self.shared_paths

    @property
    def call_kwargs(self) -> dict:
        return self.kwargs

    def get_function(self) -> Callable:
        if self._func is None:
            if self.isolated:
                self._func = load_strategy_file(self.path, self.entry_point)
            else:
                functions = load_into_shared_namespace(self.shared_paths, self.entry_point)
                self._func = functions[self.shared_paths.index(self.path)]
        return self._func

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state["_func"] = None
        return state

    def __repr__(self) -> str:
        mode = "isolated" if self.isolated else "shared"
        return f"FileStrategy(name={self.name!r}, path='{self.path}', {mode})"


def load_strategy_files(
    paths: Sequence[str | Path],
    isolated: bool = True,
    entry_point: str = ENTRY_POINT,
) -> list[FileStrategy]:
    """
    Load several strategy files eagerly (so load errors surface immediately).

    Args:
        paths: Strategy files, in the order they should appear in results.
        isolated: Execute each file in its own module (default) or all files
                  in one shared namespace.
        entry_point: Function name each file must define.

    Returns:
        One FileStrategy per path, named after the file stem.

    Raises:
        StrategyLoadError: On any missing or broken file, or duplicate stems.
    """
    paths = [Path(p) for p in paths]
    stems = [p.stem for p in paths]
    duplicates = sorted({s for s in stems if stems.count(s) > 1})
    if duplicates:
        raise StrategyLoadError(f"Strategy file names must be unique, duplicates: {duplicates}")

    strategies = []
    if isolated:
        for path in paths:
            strategy = FileStrategy(path, entry_point=entry_point)
            strategy.get_function()
            strategies.append(strategy)
    else:
        functions = load_into_shared_namespace(paths, entry_point)
        for path, func in zip(paths, functions):
            strategy = FileStrategy(path, entry_point=entry_point, shared_paths=paths)
            strategy._func = func
            strategies.append(strategy)

    logger.info(
        "Loaded %d strategy file(s) into %s namespace(s)",
        len(strategies), "isolated" if isolated else "a shared",
    )
    return strategies


def load_strategies_from_folder(
    folder_path: str | Path,
    isolated: bool = True,
    entry_point: str = ENTRY_POINT,
    pattern: str = "*.py",
) -> list[FileStrategy]:
    """
    Load every strategy file of a folder, sorted by file name.

    Files whose name starts with an underscore (e.g. __init__.py) are skipped.

    Raises:
        StrategyLoadError: If the folder does not exist or holds no strategy files.
    """
    folder = Path(folder_path)
    if not folder.is_dir():
        raise StrategyLoadError(f"Strategy folder does not exist: {folder}")

    paths = sorted(p for p in folder.glob(pattern) if p.is_file() and not p.name.startswith("_"))
    if not paths:
        raise StrategyLoadError(f"No strategy files matching '{pattern}' in folder: {folder}")

    return load_strategy_files(paths, isolated=isolated, entry_point=entry_point)
