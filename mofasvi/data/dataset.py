"""Multi-group, multi-view dataset with explicit missingness.

Groups partition the samples and views partition the features, so the data
is a grid of ``N_g x D_m`` matrices, one per (group, view) pair. Missing
values are NaN in the raw matrices and are tracked with a boolean mask
(True = observed). The matrices handed to the model are centered per group
and feature and carry zeros at missing positions, which never contribute
because every statistic is mask-weighted.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from ..core.error_handling import DataInconsistencyError

logger = logging.getLogger(__name__)

LONG_FORMAT_COLUMNS = ["sample", "group", "feature", "view", "value"]
DEFAULT_GROUP = "group1"
DEFAULT_VIEW = "view1"


class Dataset:
    """Observation matrices for every (group, view) pair.

    Parameters
    ----------
    data : Dict[str, Dict[str, np.ndarray]]
        ``data[group][view]`` is an ``N_g x D_m`` array with NaN for missing
    samples : Dict[str, List[str]]
        Sample names per group, in row order
    features : Dict[str, List[str]]
        Feature names per view, in column order
    center_features : bool
        Subtract the per-group observed mean of every feature

    Raises
    ------
    DataInconsistencyError
        If identifiers and matrix dimensions disagree, a sample belongs to
        more than one group, or a feature belongs to more than one view
    """

    def __init__(
        self,
        data: Dict[str, Dict[str, np.ndarray]],
        samples: Dict[str, List[str]],
        features: Dict[str, List[str]],
        center_features: bool = True,
    ):
        self._groups = list(samples.keys())
        self._views = list(features.keys())
        self._samples = {g: [str(s) for s in samples[g]] for g in self._groups}
        self._features = {m: [str(f) for f in features[m]] for m in self._views}
        self.center_features = center_features

        self._validate_identifiers()

        self._raw: Dict[str, Dict[str, np.ndarray]] = {}
        self._mask: Dict[str, Dict[str, np.ndarray]] = {}
        self._centered: Dict[str, Dict[str, np.ndarray]] = {}
        self.intercepts: Dict[str, Dict[str, np.ndarray]] = {}

        for g in self._groups:
            if g not in data:
                raise DataInconsistencyError(f"No matrices supplied for group '{g}'")
            self._raw[g], self._mask[g], self._centered[g], self.intercepts[g] = {}, {}, {}, {}
            for m in self._views:
                if m not in data[g]:
                    raise DataInconsistencyError(
                        f"Group '{g}' has no matrix for view '{m}'"
                    )
                self._add_matrix(g, m, data[g][m])

        logger.info(
            f"Dataset: {len(self._groups)} group(s), {len(self._views)} view(s), "
            f"N={self.N}, D={self.D}"
        )

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    def _validate_identifiers(self) -> None:
        if not self._groups:
            raise DataInconsistencyError("Dataset has no groups")
        if not self._views:
            raise DataInconsistencyError("Dataset has no views")

        seen_samples: Dict[str, str] = {}
        for g, names in self._samples.items():
            if not names:
                raise DataInconsistencyError(f"Group '{g}' has no samples")
            if len(set(names)) != len(names):
                raise DataInconsistencyError(f"Group '{g}' has duplicated sample names")
            for name in names:
                if name in seen_samples:
                    raise DataInconsistencyError(
                        f"Sample '{name}' appears in groups '{seen_samples[name]}' and '{g}'"
                    )
                seen_samples[name] = g

        seen_features: Dict[str, str] = {}
        for m, names in self._features.items():
            if not names:
                raise DataInconsistencyError(f"View '{m}' has no features")
            if len(set(names)) != len(names):
                raise DataInconsistencyError(f"View '{m}' has duplicated feature names")
            for name in names:
                if name in seen_features:
                    raise DataInconsistencyError(
                        f"Feature '{name}' appears in views '{seen_features[name]}' and '{m}'"
                    )
                seen_features[name] = m

    def _add_matrix(self, group: str, view: str, values) -> None:
        try:
            array = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise DataInconsistencyError(
                f"Matrix for ({group}, {view}) is not numeric: {e}"
            )

        expected = (len(self._samples[group]), len(self._features[view]))
        if array.shape != expected:
            raise DataInconsistencyError(
                f"Matrix for ({group}, {view}) has shape {array.shape}, "
                f"expected {expected} from sample/feature identifiers"
            )
        if np.isinf(array).any():
            raise DataInconsistencyError(f"Matrix for ({group}, {view}) contains infinite values")

        mask = ~np.isnan(array)
        if not mask.any():
            logger.warning(f"⚠️  ({group}, {view}) has no observed values")

        n_obs = mask.sum(axis=0)
        if self.center_features:
            sums = np.where(mask, array, 0.0).sum(axis=0)
            intercept = np.divide(sums, n_obs, out=np.zeros(array.shape[1]), where=n_obs > 0)
        else:
            intercept = np.zeros(array.shape[1])

        self._raw[group][view] = array
        self._mask[group][view] = mask
        self._centered[group][view] = np.where(mask, array - intercept, 0.0)
        self.intercepts[group][view] = intercept

    @classmethod
    def from_long(cls, df: pd.DataFrame, center_features: bool = True) -> "Dataset":
        """Build a dataset from a long-format table.

        Parameters
        ----------
        df : pd.DataFrame
            Columns ``sample``, ``feature``, ``value`` and optionally
            ``group`` and ``view``; rows with a NaN value are missing
        center_features : bool
            Center every feature within each group

        Returns
        -------
        Dataset
        """
        missing = [c for c in ("sample", "feature", "value") if c not in df.columns]
        if missing:
            raise DataInconsistencyError(f"Long-format data is missing columns: {missing}")

        df = df.copy()
        if "group" not in df.columns:
            df["group"] = DEFAULT_GROUP
        if "view" not in df.columns:
            df["view"] = DEFAULT_VIEW
        for col in ("sample", "group", "feature", "view"):
            df[col] = df[col].astype(str)
        try:
            df["value"] = pd.to_numeric(df["value"], errors="raise").astype(np.float64)
        except (TypeError, ValueError) as e:
            raise DataInconsistencyError(f"Long-format values are not numeric: {e}")

        sample_groups = df[["sample", "group"]].drop_duplicates()
        shared = sample_groups["sample"][sample_groups["sample"].duplicated()]
        if len(shared) > 0:
            raise DataInconsistencyError(
                f"Samples assigned to more than one group: {sorted(shared.unique())[:5]}"
            )

        feature_views = df[["feature", "view"]].drop_duplicates()
        shared = feature_views["feature"][feature_views["feature"].duplicated()]
        if len(shared) > 0:
            raise DataInconsistencyError(
                f"Features assigned to more than one view: {sorted(shared.unique())[:5]}"
            )

        duplicated = df.duplicated(subset=["sample", "feature"])
        if duplicated.any():
            raise DataInconsistencyError(
                f"{int(duplicated.sum())} duplicated (sample, feature) observations"
            )

        groups = list(pd.unique(df["group"]))
        views = list(pd.unique(df["view"]))
        samples = {g: list(pd.unique(df.loc[df["group"] == g, "sample"])) for g in groups}
        features = {m: list(pd.unique(df.loc[df["view"] == m, "feature"])) for m in views}

        data: Dict[str, Dict[str, np.ndarray]] = {}
        for g in groups:
            data[g] = {}
            for m in views:
                block = df[(df["group"] == g) & (df["view"] == m)]
                if block.empty:
                    data[g][m] = np.full((len(samples[g]), len(features[m])), np.nan)
                    continue
                matrix = (
                    block.pivot(index="sample", columns="feature", values="value")
                    .reindex(index=samples[g], columns=features[m])
                )
                data[g][m] = matrix.to_numpy(dtype=np.float64)

        return cls(data, samples, features, center_features=center_features)

    @classmethod
    def from_matrices(
        cls,
        matrices: Dict[str, Dict[str, pd.DataFrame]],
        center_features: bool = True,
    ) -> "Dataset":
        """Build a dataset from ``matrices[group][view]`` DataFrames.

        Each DataFrame has samples as index and features as columns. Within
        a group every view must list the same samples; within a view every
        group must list the same features. Row and column order follow the
        first matrix seen.
        """
        if not matrices:
            raise DataInconsistencyError("Dataset has no groups")

        groups = list(matrices.keys())
        views: List[str] = list(matrices[groups[0]].keys())
        for g in groups:
            if set(matrices[g].keys()) != set(views):
                raise DataInconsistencyError(
                    f"Group '{g}' has views {sorted(matrices[g].keys())}, expected {sorted(views)}"
                )

        samples: Dict[str, List[str]] = {}
        for g in groups:
            reference: Optional[pd.Index] = None
            for m in views:
                index = pd.Index(matrices[g][m].index.astype(str))
                if reference is None:
                    reference = index
                elif set(index) != set(reference) or len(index) != len(reference):
                    raise DataInconsistencyError(
                        f"Sample identifiers of group '{g}' differ between views"
                    )
            samples[g] = list(reference)

        features: Dict[str, List[str]] = {}
        for m in views:
            reference = None
            for g in groups:
                columns = pd.Index(matrices[g][m].columns.astype(str))
                if reference is None:
                    reference = columns
                elif set(columns) != set(reference) or len(columns) != len(reference):
                    raise DataInconsistencyError(
                        f"Feature identifiers of view '{m}' differ between groups"
                    )
            features[m] = list(reference)

        data = {}
        for g in groups:
            data[g] = {}
            for m in views:
                frame = matrices[g][m].copy()
                frame.index = frame.index.astype(str)
                frame.columns = frame.columns.astype(str)
                frame = frame.reindex(index=samples[g], columns=features[m])
                try:
                    numeric = frame.apply(pd.to_numeric, errors="raise")
                    data[g][m] = numeric.to_numpy(dtype=np.float64)
                except (TypeError, ValueError) as e:
                    raise DataInconsistencyError(
                        f"Matrix for ({g}, {m}) is not numeric: {e}"
                    )

        return cls(data, samples, features, center_features=center_features)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def groups(self) -> List[str]:
        return list(self._groups)

    @property
    def views(self) -> List[str]:
        return list(self._views)

    @property
    def N(self) -> Dict[str, int]:
        """Number of samples per group."""
        return {g: len(self._samples[g]) for g in self._groups}

    @property
    def D(self) -> Dict[str, int]:
        """Number of features per view."""
        return {m: len(self._features[m]) for m in self._views}

    def samples(self, group: str) -> List[str]:
        return list(self._samples[group])

    def features(self, view: str) -> List[str]:
        return list(self._features[view])

    def Y(self, group: str, view: str) -> np.ndarray:
        """Centered matrix with zeros at missing positions."""
        return self._centered[group][view]

    def mask(self, group: str, view: str) -> np.ndarray:
        """Boolean observation mask (True = observed)."""
        return self._mask[group][view]

    def values(self, group: str, view: str) -> np.ndarray:
        """Centered matrix with NaN at missing positions."""
        return np.where(self._mask[group][view], self._centered[group][view], np.nan)

    def raw(self, group: str, view: str) -> np.ndarray:
        """Uncentered matrix as supplied, NaN at missing positions."""
        return self._raw[group][view]

    def missing_fraction(self, group: str, view: str) -> float:
        return float(1.0 - self._mask[group][view].mean())

    def summary(self) -> pd.DataFrame:
        """One row per (group, view) with dimensions and missingness."""
        rows = []
        for g in self._groups:
            for m in self._views:
                rows.append(
                    {
                        "group": g,
                        "view": m,
                        "n_samples": len(self._samples[g]),
                        "n_features": len(self._features[m]),
                        "n_observed": int(self._mask[g][m].sum()),
                        "missing_fraction": self.missing_fraction(g, m),
                    }
                )
        return pd.DataFrame(rows)

    def to_long(self, centered: bool = False) -> pd.DataFrame:
        """Observed entries as a long-format table."""
        frames = []
        for g in self._groups:
            for m in self._views:
                matrix = self.values(g, m) if centered else self._raw[g][m]
                frame = pd.DataFrame(matrix, index=self._samples[g], columns=self._features[m])
                frame.index.name = "sample"
                long = frame.reset_index().melt(
                    id_vars="sample", var_name="feature", value_name="value"
                )
                long = long.dropna(subset=["value"])
                long["group"] = g
                long["view"] = m
                frames.append(long)
        return pd.concat(frames, ignore_index=True)[LONG_FORMAT_COLUMNS]
