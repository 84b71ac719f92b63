"""Tests for mofasvi.data.dataset module."""

import numpy as np
import pandas as pd
import pytest

from mofasvi.core.error_handling import DataInconsistencyError
from mofasvi.data.dataset import LONG_FORMAT_COLUMNS, Dataset


@pytest.mark.unit
class TestDatasetFromMatrices:
    """Test construction from per-(group, view) DataFrames."""

    def test_dimensions(self, small_dataset):
        assert small_dataset.groups == ["group1", "group2"]
        assert small_dataset.views == ["view1", "view2"]
        assert small_dataset.N == {"group1": 30, "group2": 20}
        assert small_dataset.D == {"view1": 8, "view2": 6}

    def test_mask_matches_nan(self, small_matrices, small_dataset):
        raw = small_matrices["group1"]["view1"].to_numpy()
        np.testing.assert_array_equal(small_dataset.mask("group1", "view1"), ~np.isnan(raw))

    def test_centering_uses_observed_entries(self, small_matrices, small_dataset):
        raw = small_matrices["group2"]["view2"].to_numpy()
        Y = small_dataset.Y("group2", "view2")
        mask = small_dataset.mask("group2", "view2")

        np.testing.assert_allclose(small_dataset.intercepts["group2"]["view2"], np.nanmean(raw, axis=0))
        # Missing entries are zero, observed columns have zero mean
        assert np.all(Y[~mask] == 0.0)
        np.testing.assert_allclose(Y.sum(axis=0) / mask.sum(axis=0), 0.0, atol=1e-12)

    def test_no_centering(self, small_matrices):
        dataset = Dataset.from_matrices(small_matrices, center_features=False)
        raw = small_matrices["group1"]["view2"].to_numpy()
        np.testing.assert_allclose(dataset.values("group1", "view2"), raw)

    def test_row_order_follows_first_view(self, small_matrices):
        shuffled = small_matrices["group1"]["view2"].iloc[::-1]
        small_matrices["group1"]["view2"] = shuffled
        dataset = Dataset.from_matrices(small_matrices)
        expected = small_matrices["group1"]["view1"].index.tolist()
        assert dataset.samples("group1") == expected
        np.testing.assert_allclose(
            dataset.raw("group1", "view2"), shuffled.loc[expected].to_numpy()
        )

    def test_sample_mismatch_across_views(self, small_matrices):
        small_matrices["group1"]["view2"] = small_matrices["group1"]["view2"].iloc[1:]
        with pytest.raises(DataInconsistencyError, match="differ between views"):
            Dataset.from_matrices(small_matrices)

    def test_feature_mismatch_across_groups(self, small_matrices):
        frame = small_matrices["group2"]["view1"]
        small_matrices["group2"]["view1"] = frame.rename(columns={frame.columns[0]: "other"})
        with pytest.raises(DataInconsistencyError, match="differ between groups"):
            Dataset.from_matrices(small_matrices)

    def test_missing_view_in_group(self, small_matrices):
        del small_matrices["group2"]["view2"]
        with pytest.raises(DataInconsistencyError, match="views"):
            Dataset.from_matrices(small_matrices)

    def test_sample_in_two_groups(self, small_matrices):
        for view in ("view1", "view2"):
            frame = small_matrices["group2"][view]
            small_matrices["group2"][view] = frame.rename(index={frame.index[0]: "group1_s000"})
        with pytest.raises(DataInconsistencyError, match="appears in groups"):
            Dataset.from_matrices(small_matrices)

    def test_infinite_values_rejected(self, small_matrices):
        small_matrices["group1"]["view1"].iloc[0, 0] = np.inf
        with pytest.raises(DataInconsistencyError, match="infinite"):
            Dataset.from_matrices(small_matrices)

    def test_fully_missing_block_warns(self, small_matrices, caplog):
        small_matrices["group2"]["view1"].loc[:, :] = np.nan
        dataset = Dataset.from_matrices(small_matrices)
        assert dataset.missing_fraction("group2", "view1") == 1.0
        assert not dataset.mask("group2", "view1").any()
        assert "no observed values" in caplog.text

    def test_non_numeric_values_rejected(self):
        matrices = {"g": {"v": pd.DataFrame({"f": ["1.0", "oops"]}, index=["a", "b"])}}
        with pytest.raises(DataInconsistencyError, match="not numeric"):
            Dataset.from_matrices(matrices)

    def test_numeric_strings_converted(self):
        matrices = {"g": {"v": pd.DataFrame({"f": ["1.0", "3.0"]}, index=["a", "b"])}}
        dataset = Dataset.from_matrices(matrices, center_features=False)
        np.testing.assert_allclose(dataset.Y("g", "v"), [[1.0], [3.0]])


@pytest.mark.unit
class TestDatasetFromLong:
    """Test construction from long-format tables."""

    def test_round_trip_through_long_format(self, small_dataset, long_data):
        assert list(long_data.columns) == LONG_FORMAT_COLUMNS
        rebuilt = Dataset.from_long(long_data)

        assert rebuilt.groups == small_dataset.groups
        assert rebuilt.views == small_dataset.views
        assert rebuilt.N == small_dataset.N
        assert rebuilt.D == small_dataset.D
        for g in rebuilt.groups:
            # Long-format row order can differ when leading entries are missing
            order = [rebuilt.samples(g).index(s) for s in small_dataset.samples(g)]
            for m in rebuilt.views:
                assert rebuilt.features(m) == small_dataset.features(m)
                np.testing.assert_array_equal(rebuilt.mask(g, m)[order], small_dataset.mask(g, m))
                np.testing.assert_allclose(rebuilt.Y(g, m)[order], small_dataset.Y(g, m))

    def test_default_group_and_view(self):
        df = pd.DataFrame(
            {"sample": ["a", "a", "b"], "feature": ["x", "y", "x"], "value": [1.0, 2.0, 3.0]}
        )
        dataset = Dataset.from_long(df)
        assert dataset.groups == ["group1"]
        assert dataset.views == ["view1"]
        assert dataset.mask("group1", "view1").tolist() == [[True, True], [True, False]]

    def test_missing_columns(self):
        with pytest.raises(DataInconsistencyError, match="missing columns"):
            Dataset.from_long(pd.DataFrame({"sample": ["a"], "value": [1.0]}))

    def test_duplicated_observation(self):
        df = pd.DataFrame(
            {"sample": ["a", "a"], "feature": ["x", "x"], "value": [1.0, 2.0]}
        )
        with pytest.raises(DataInconsistencyError, match="duplicated"):
            Dataset.from_long(df)

    def test_feature_in_two_views(self):
        df = pd.DataFrame(
            {
                "sample": ["a", "b"],
                "feature": ["x", "x"],
                "view": ["rna", "methylation"],
                "value": [1.0, 2.0],
            }
        )
        with pytest.raises(DataInconsistencyError, match="more than one view"):
            Dataset.from_long(df)

    def test_sample_in_two_groups(self):
        df = pd.DataFrame(
            {
                "sample": ["a", "a"],
                "feature": ["x", "y"],
                "group": ["g1", "g2"],
                "value": [1.0, 2.0],
            }
        )
        with pytest.raises(DataInconsistencyError, match="more than one group"):
            Dataset.from_long(df)

    def test_non_numeric_values_rejected(self):
        df = pd.DataFrame({"sample": ["a", "b"], "feature": ["f", "f"], "value": ["1.0", "oops"]})
        with pytest.raises(DataInconsistencyError, match="not numeric"):
            Dataset.from_long(df)


@pytest.mark.unit
class TestDatasetSummary:
    """Test summary accessors."""

    def test_summary_table(self, small_dataset):
        summary = small_dataset.summary()
        assert len(summary) == 4
        row = summary[(summary["group"] == "group2") & (summary["view"] == "view1")].iloc[0]
        assert row["n_samples"] == 20
        assert row["n_features"] == 8
        assert row["n_observed"] == int(small_dataset.mask("group2", "view1").sum())
