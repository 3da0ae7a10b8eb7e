"""
Dataset schema validation.

**Conceptual**: This module defines the "data contract" every dataset must obey
before it reaches the rolling-window engine. A dataset is a bundle of aligned
matrices, one per field (adjusted, open, high, low, close, volume, plus any
user indicator), that all share:
  - the same chronological time axis (rows, oldest first, no duplicates), and
  - the same asset identifiers (columns, in the same order).

**Schema philosophy**:
  - Validation raises DatasetValidationError with actionable messages naming
    the dataset and the offending field.
  - Checks run once, before scheduling, so the engine can slice by position
    without re-checking shapes at every rebalance.
"""

import pandas as pd
from typing import Mapping

from portfolio_backtest.utils.errors import DatasetValidationError

# Fields a downloaded stock dataset usually carries (all optional except the price field)
STANDARD_FIELDS = [
    'adjusted',
    'open',
    'high',
    'low',
    'close',
    'volume',
]

__all__ = ["DatasetValidationError", "STANDARD_FIELDS", "validate_time_index", "validate_dataset_fields"]


def validate_time_index(index: pd.Index, context: str | None = None) -> None:
    """
    Check that a time axis is strictly increasing (oldest first, no ties).

    Args:
        index: Row index of a field matrix or of the index series.
        context: Optional description prepended to error messages.

    Raises:
        DatasetValidationError: If the index has duplicates or is not ascending.
    """
    ctx = f"{context}: " if context else ""

    if not index.is_unique:
        duplicates = index[index.duplicated()].tolist()
        raise DatasetValidationError(
            f"{ctx}Time index contains duplicate entries: {duplicates[:5]} (showing first 5)."
        )

    if not index.is_monotonic_increasing:
        raise DatasetValidationError(
            f"{ctx}Time index is not in strictly ascending order. "
            f"Hint: sort each field with .sort_index() (oldest first) before building the dataset."
        )


def validate_dataset_fields(
    fields: Mapping[str, pd.DataFrame],
    index_series: pd.Series | None = None,
    context: str | None = None,
) -> None:
    """
    Validate that a dataset's field matrices are aligned.

    **Functionally**:
      - At least one field must be present.
      - Every field must be a DataFrame with at least one row and one column.
      - The first field defines the reference time index and asset columns;
        every other field must match both exactly (same labels, same order).
      - Asset columns must be unique.
      - The optional index series must be a Series on the same time index.

    **Why exact equality instead of aligning?**
      - Silent re-alignment (reindexing, outer joins) introduces NaNs that
        strategies would not expect. Misaligned inputs are a caller bug and
        should be reported, not patched.

    Args:
        fields: Mapping of field name -> DataFrame (rows = time, columns = assets).
        index_series: Optional market index price series.
        context: Optional dataset description for error messages.

    Raises:
        DatasetValidationError: On any violation.
    """
    ctx = f"{context}: " if context else ""

    if not fields:
        raise DatasetValidationError(f"{ctx}Dataset has no fields. Need at least one price matrix.")

    reference_name = None
    reference = None
    for name, frame in fields.items():
        if not isinstance(name, str) or not name:
            raise DatasetValidationError(f"{ctx}Field names must be non-empty strings, got: {name!r}.")
        if not isinstance(frame, pd.DataFrame):
            raise DatasetValidationError(
                f"{ctx}Field '{name}' must be a pandas DataFrame, got: {type(frame).__name__}."
            )
        if frame.shape[0] == 0 or frame.shape[1] == 0:
            raise DatasetValidationError(
                f"{ctx}Field '{name}' is empty (shape {frame.shape}). "
                f"Expected at least one bar and one asset."
            )

        if reference is None:
            reference_name, reference = name, frame
            validate_time_index(frame.index, context=f"{ctx}field '{name}'")
            if not frame.columns.is_unique:
                raise DatasetValidationError(
                    f"{ctx}Field '{name}' has duplicate asset columns: "
                    f"{frame.columns[frame.columns.duplicated()].tolist()}."
                )
            continue

        if frame.shape[0] != reference.shape[0] or not frame.index.equals(reference.index):
            raise DatasetValidationError(
                f"{ctx}Field '{name}' does not share the time index of field '{reference_name}' "
                f"({frame.shape[0]} rows vs {reference.shape[0]} rows)."
            )
        if list(frame.columns) != list(reference.columns):
            raise DatasetValidationError(
                f"{ctx}Field '{name}' does not share the asset columns of field '{reference_name}'. "
                f"Expected: {list(reference.columns)[:5]}... "
                f"Found: {list(frame.columns)[:5]}..."
            )

    if index_series is not None:
        if not isinstance(index_series, pd.Series):
            raise DatasetValidationError(
                f"{ctx}Index series must be a pandas Series, got: {type(index_series).__name__}."
            )
        if not index_series.index.equals(reference.index):
            raise DatasetValidationError(
                f"{ctx}Index series does not share the time index of field '{reference_name}'."
            )
