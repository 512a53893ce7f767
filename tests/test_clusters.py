import numpy as np
import pandas as pd
import pytest

from multiwayvcov import OLS
from multiwayvcov.core import clusters as cl
from multiwayvcov.core.exceptions import InvalidInput

# ---------------------------------------------------------------------
# Subset enumeration
# ---------------------------------------------------------------------


def test_three_dims_give_seven_subsets_in_size_order():
    table = pd.DataFrame({
        "a": [1, 1, 2, 2, 3, 3],
        "b": ["u", "v", "u", "v", "u", "v"],
        "c": [0, 0, 0, 1, 1, 1],
    })
    subsets = cl.build_subsets(table)
    assert len(subsets) == 7
    assert [s.dims for s in subsets] == [
        (0,), (1,), (2,), (0, 1), (0, 2), (1, 2), (0, 1, 2),
    ]
    assert [s.sign for s in subsets] == [1, 1, 1, -1, -1, -1, 1]
    assert [s.size for s in subsets] == [1, 1, 1, 2, 2, 2, 3]
    assert [s.is_top for s in subsets] == [False] * 6 + [True]
    assert subsets[3].label == "a*b"


def test_single_dimension_keeps_original_labels():
    labels = np.array(["x", "y", "x", "z"])
    (only,) = cl.build_subsets(labels)
    assert only.is_top
    assert only.sign == 1
    assert only.n_groups == 3
    np.testing.assert_array_equal(only.labels, labels)
    # sorted factorization: x -> 0, y -> 1, z -> 2
    np.testing.assert_array_equal(only.codes, [0, 1, 0, 2])


def test_interaction_labels_are_concatenated_strings():
    table = pd.DataFrame({"f": [1, 1, 2, 2], "t": [10, 20, 10, 20]})
    subsets = cl.build_subsets(table)
    top = subsets[-1]
    assert list(top.labels) == ["110", "120", "210", "220"]
    assert top.n_groups == 4


def test_concatenation_collision_falls_back_to_tuple_groups():
    # "1" + "11" and "11" + "1" both concatenate to "111"
    table = pd.DataFrame({"a": [1, 11, 1, 11], "b": [11, 1, 11, 1]})
    top = cl.build_subsets(table)[-1]
    assert top.n_groups == 2
    assert top.codes[0] == top.codes[2]
    assert top.codes[1] == top.codes[3]
    assert top.codes[0] != top.codes[1]


def test_interaction_groups_match_value_tuples(rng):
    a = rng.integers(0, 5, size=200)
    b = rng.integers(0, 4, size=200)
    top = cl.build_subsets(pd.DataFrame({"a": a, "b": b}))[-1]
    assert top.n_groups == len(set(zip(a.tolist(), b.tolist())))


# ---------------------------------------------------------------------
# Cluster table coercion
# ---------------------------------------------------------------------


def test_coerce_accepts_list_of_columns():
    table = cl.coerce_cluster_table([[1, 2, 3], ["a", "b", "a"]])
    assert table.shape == (3, 2)


def test_coerce_reads_list_of_tuples_as_one_column():
    labels = [(0, "x"), (1, "x"), (0, "y"), (0, "x"), (1, "y")]
    table = cl.coerce_cluster_table(labels)
    assert table.shape == (5, 1)
    assert table.iloc[1, 0] == (1, "x")
    # as many rows as tuple entries must not flip the table
    assert cl.coerce_cluster_table([(0, "x"), (1, "y")]).shape == (2, 1)
    assert cl.build_subsets(table)[0].n_groups == 4


def test_coerce_can_defer_missing_label_check():
    firm = pd.Series([1.0, np.nan, 2.0], name="firm")
    table = cl.coerce_cluster_table(firm, allow_missing=True)
    assert table.shape == (3, 1)
    with pytest.raises(InvalidInput, match="missing labels"):
        cl.check_cluster_labels(table)
    assert cl.check_cluster_labels(table.iloc[[0, 2]]) is not None


def test_coerce_rejects_ragged_columns():
    with pytest.raises(InvalidInput, match="different lengths"):
        cl.coerce_cluster_table([[1, 2, 3], [1, 2]])


def test_coerce_rejects_missing_labels():
    with pytest.raises(InvalidInput, match="missing labels"):
        cl.coerce_cluster_table(pd.Series([1.0, np.nan, 2.0], name="firm"))


def test_coerce_rejects_unsupported_type():
    with pytest.raises(InvalidInput, match="Unsupported cluster type"):
        cl.coerce_cluster_table(3.5)


# ---------------------------------------------------------------------
# Resolution and alignment against a fitted model
# ---------------------------------------------------------------------


def test_cluster_source_is_required(petersen_fit):
    with pytest.raises(InvalidInput, match="must be specified"):
        cl.resolve_cluster_table(petersen_fit)


def test_cluster_and_varnames_are_exclusive(petersen, petersen_fit):
    with pytest.raises(InvalidInput, match="only one"):
        cl.resolve_cluster_table(petersen_fit, petersen["firmid"], "firmid")


def test_unknown_varnames_are_rejected(petersen_fit):
    with pytest.raises(InvalidInput, match="missing"):
        cl.resolve_cluster_table(petersen_fit, cluster_varnames=["firmid", "industry"])


def test_varnames_need_model_data(hetero_data):
    y, X = hetero_data
    res = OLS(y, X).fit()
    with pytest.raises(InvalidInput, match="from_formula"):
        cl.resolve_cluster_table(res, cluster_varnames="firmid")


def test_alignment_drops_rows_omitted_by_the_fit(petersen):
    df = petersen.copy()
    df.loc[[3, 17, 200], "x"] = np.nan
    res = OLS.from_formula("y ~ x", df).fit()
    assert res.n_obs == df.shape[0] - 3
    table = cl.align_cluster_table(cl.coerce_cluster_table(df["firmid"]), res)
    assert table.shape[0] == res.n_obs
    expected = df["firmid"].drop(index=[3, 17, 200]).to_numpy()
    np.testing.assert_array_equal(table.iloc[:, 0].to_numpy(), expected)


def test_alignment_rejects_wrong_row_count(petersen_fit, petersen):
    table = cl.coerce_cluster_table(petersen["firmid"].iloc[:-5])
    with pytest.raises(InvalidInput, match="rows"):
        cl.align_cluster_table(table, petersen_fit)


# ---------------------------------------------------------------------
# Group statistics, corrections and the White rule
# ---------------------------------------------------------------------


def test_group_stats_and_dfc(petersen, petersen_fit):
    subsets = cl.prepare_subsets(petersen_fit, petersen[["firmid", "year"]])
    stats = cl.group_stats(subsets, petersen_fit.n_obs, petersen_fit.rank)
    assert [s.M for s in stats] == [50, 10, 500]
    assert all(s.N == 500 and s.K == 2 for s in stats)
    dfc = cl.df_corrections(stats, True)
    assert dfc[0] == pytest.approx((50 / 49) * (499 / 498))
    np.testing.assert_array_equal(cl.df_corrections(stats, False), np.ones(3))


def test_dfc_needs_two_clusters():
    with pytest.raises(InvalidInput, match="at least 2 clusters"):
        cl.GroupStats(M=1, N=10, K=2).dfc()
    assert cl.GroupStats(M=1, N=10, K=2).dfc(enabled=False) == 1.0


def test_explicit_dfc_vector_length_is_checked():
    stats = [cl.GroupStats(M=5, N=50, K=2)] * 3
    np.testing.assert_array_equal(cl.df_corrections(stats, [1.0, 2.0, 3.0]), [1.0, 2.0, 3.0])
    with pytest.raises(InvalidInput, match="length 2"):
        cl.df_corrections(stats, [1.0, 2.0])


def test_use_white_auto_rule(small_panel, petersen):
    full = cl.build_subsets(small_panel[["firmid", "year"]])
    assert cl.resolve_use_white(full, None) is True
    assert cl.resolve_use_white(full, False) is False
    # one-way clustering never switches automatically
    one = cl.build_subsets(small_panel["firmid"])
    assert cl.resolve_use_white(one, None) is False
    # an unbalanced panel has fewer firm-year cells than firms x years
    sub = petersen[["firmid", "year"]].iloc[:-1]
    assert cl.resolve_use_white(cl.build_subsets(sub), None) is False
