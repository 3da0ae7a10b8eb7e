"""
The Dataset container handed to the rolling-window engine.

**Conceptual**: A Dataset is a named bundle of aligned, time-indexed matrices
(one per field) plus an optional market index series. Datasets are built by
whatever acquires or resamples data, validated once here, and then treated as
read-only: the engine only ever takes positional slices, so the same Dataset
object can be shared by many concurrent runs without copying.
"""

from types import MappingProxyType
from typing import Mapping

import pandas as pd

from portfolio_backtest.data.schemas import validate_dataset_fields
from portfolio_backtest.utils.errors import BacktestConfigError

INDEX_FIELD = "index"


class Dataset:
    """
    Named bundle of aligned field matrices.

    Attributes:
        name: Display name (None until the scheduler assigns "dataset N").
        fields: Read-only mapping of field name -> DataFrame.
        index_series: Optional market index prices on the same time axis.
    """

    def __init__(
        self,
        fields: Mapping[str, pd.DataFrame],
        name: str | None = None,
        index_series: pd.Series | None = None,
    ):
        """
        Build and validate a dataset.

        Args:
            fields: Mapping of field name -> DataFrame (rows = bars, oldest
                    first; columns = assets).
            name: Optional display name.
            index_series: Optional market index price series.

        Raises:
            DatasetValidationError: If the matrices are not aligned.
        """
        if INDEX_FIELD in fields:
            raise BacktestConfigError(
                f"'{INDEX_FIELD}' is reserved for the market index; pass it as index_series."
            )
        validate_dataset_fields(fields, index_series=index_series, context=name)
        self.name = name
        self._fields = dict(fields)
        self.index_series = index_series

    @classmethod
    def from_prices(
        cls,
        prices: pd.DataFrame,
        name: str | None = None,
        field: str = "adjusted",
        index_series: pd.Series | None = None,
    ) -> "Dataset":
        """Build a single-field dataset from a price matrix."""
        return cls({field: prices}, name=name, index_series=index_series)

    def with_name(self, name: str) -> "Dataset":
        """Return a renamed dataset sharing the same (unchanged) matrices."""
        renamed = object.__new__(Dataset)
        renamed.name = name
        renamed._fields = self._fields
        renamed.index_series = self.index_series
        return renamed

    @property
    def fields(self) -> Mapping[str, pd.DataFrame]:
        return MappingProxyType(self._fields)

    @property
    def field_names(self) -> list[str]:
        return list(self._fields)

    @property
    def _reference(self) -> pd.DataFrame:
        return next(iter(self._fields.values()))

    @property
    def assets(self) -> list:
        return list(self._reference.columns)

    @property
    def n_assets(self) -> int:
        return self._reference.shape[1]

    @property
    def n_bars(self) -> int:
        return self._reference.shape[0]

    @property
    def time_index(self) -> pd.Index:
        return self._reference.index

    @property
    def has_index(self) -> bool:
        return self.index_series is not None

    def __contains__(self, field: str) -> bool:
        return field in self._fields

    def __getitem__(self, field: str) -> pd.DataFrame:
        return self._fields[field]

    def prices(self, field: str) -> pd.DataFrame:
        """
        Return the price matrix used as the return basis.

        Raises:
            BacktestConfigError: If the dataset has no such field.
        """
        if field not in self._fields:
            raise BacktestConfigError(
                f"Dataset '{self.name}' has no price field '{field}'. "
                f"Available fields: {self.field_names}."
            )
        return self._fields[field]

    def window(self, start: int, stop: int) -> dict:
        """
        Slice bars [start, stop) of every field by position.

        The result is a fresh dict (field name -> DataFrame view), with the
        index series under the key "index" when the dataset carries one.
        Strategies may read it freely; it is discarded after the step.
        """
        window = {name: frame.iloc[start:stop] for name, frame in self._fields.items()}
        if self.index_series is not None:
            window[INDEX_FIELD] = self.index_series.iloc[start:stop]
        return window

    def index_dataset(self, field: str) -> "Dataset":
        """
        View the market index as a one-asset dataset.

        Used by the index-tracking benchmark: holding weight 1.0 in this
        dataset reproduces the index's returns.

        Raises:
            BacktestConfigError: If the dataset carries no index series.
        """
        if self.index_series is None:
            raise BacktestConfigError(f"Dataset '{self.name}' has no index series.")
        frame = self.index_series.to_frame(name=INDEX_FIELD)
        return Dataset({field: frame}, name=self.name)

    def __repr__(self) -> str:
        return (
            f"Dataset(name={self.name!r}, fields={self.field_names}, "
            f"bars={self.n_bars}, assets={self.n_assets}, has_index={self.has_index})"
        )
