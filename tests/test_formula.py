import numpy as np
import pandas as pd
import pytest

from multiwayvcov import OLS
from multiwayvcov.core.exceptions import InvalidInput
from multiwayvcov.utils.formula import parse_formula


def _toy_df() -> pd.DataFrame:
    n = 10
    return pd.DataFrame(
        {
            "y": np.arange(n, dtype=float),
            "x": np.arange(n, dtype=float) ** 2 + 1.0,
            "g": list("ab") * 5,
        },
        index=pd.RangeIndex(100, 100 + n),
    )


def test_include_intercept_default_true() -> None:
    out = parse_formula("y ~ x", _toy_df())
    assert out["include_intercept"] is True
    assert out["var_names"] == ["Intercept", "x"]
    assert out["X"].shape == (10, 2)
    assert out["y_name"] == "y"


def test_include_intercept_detects_x_minus_1() -> None:
    out = parse_formula("y ~ x - 1", _toy_df())
    assert out["include_intercept"] is False
    assert out["var_names"] == ["x"]


def test_categorical_terms_expand() -> None:
    out = parse_formula("y ~ x + C(g)", _toy_df())
    assert out["var_names"] == ["Intercept", "C(g)[T.b]", "x"]


def test_missing_rows_are_masked_relative_to_data() -> None:
    df = _toy_df()
    df.iloc[2, 1] = np.nan
    df.iloc[7, 0] = np.nan
    out = parse_formula("y ~ x", df)
    assert out["n_total"] == 10
    assert out["row_mask"].tolist() == [True, True, False, True, True, True, True, False, True, True]
    assert out["X"].shape == (8, 2)
    assert out["na_action"] == "omit"


def test_na_action_fail_rejects_missing() -> None:
    df = _toy_df()
    df.iloc[2, 1] = np.nan
    with pytest.raises(InvalidInput, match="could not build"):
        parse_formula("y ~ x", df, na_action="fail")


def test_bad_inputs() -> None:
    with pytest.raises(InvalidInput, match="DataFrame"):
        parse_formula("y ~ x", {"y": [1.0], "x": [2.0]})
    with pytest.raises(InvalidInput, match="form"):
        parse_formula("y x", _toy_df())
    with pytest.raises(InvalidInput, match="na_action"):
        parse_formula("y ~ x", _toy_df(), na_action="keep")
    with pytest.raises(InvalidInput, match="could not build"):
        parse_formula("y ~ unknown", _toy_df())


def test_from_formula_keeps_data_and_mask() -> None:
    df = _toy_df()
    df.iloc[4, 1] = np.nan
    res = OLS.from_formula("y ~ x", df).fit()
    assert res.n_obs == 9
    assert res.n_total == 10
    assert res.data is not None
    assert res.data.index.equals(pd.RangeIndex(10))
    assert res.model_info["formula"] == "y ~ x"
    arrays = OLS(df["y"].to_numpy(), df[["x"]]).fit()
    assert np.allclose(res.coef, arrays.coef)
