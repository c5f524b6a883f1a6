import os

import numpy as np
import pandas as pd
import pytest

from pgls.analysis.comparative_methods import ModelSpec, Predictor, build_design, pgls, select_complete_rows
from pgls.core.data_loader import DataLoader
from pgls.core.exceptions import IdentifierMismatchWarning, ModelSpecificationError
from pgls.methods.correlation import Pagel

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")


class TestModelSpec:
    def test_string_predictors_are_numeric(self):
        spec = ModelSpec("y", ("x", Predictor("f", "categorical")))
        assert spec.predictors == (Predictor("x"), Predictor("f", "categorical"))
        assert spec.columns == ["y", "x", "f"]
        assert spec.describe() == "y ~ 1 + x + C(f)"

    def test_from_names(self):
        spec = ModelSpec.from_names("y", numeric=["x"], categorical=["f"], intercept=False)
        assert spec.describe() == "y ~ 0 + x + C(f)"

    def test_duplicate_predictor(self):
        with pytest.raises(ModelSpecificationError):
            ModelSpec("y", ("x", "x"))

    def test_response_as_predictor(self):
        with pytest.raises(ModelSpecificationError):
            ModelSpec("y", ("y",))

    def test_unknown_kind(self):
        with pytest.raises(ModelSpecificationError):
            Predictor("x", "ordinal")


class TestBuildDesign:
    """
    Tests for turning a trait table into a response and design matrix.
    """
    def setup_method(self, method):
        self.table = pd.DataFrame(
            {
                "y": [1.0, 2.0, 3.0, 4.0, 5.0],
                "x": [0.1, 0.4, 0.2, 0.8, 0.5],
                "habitat": ["forest", "savanna", "forest", "wetland", "savanna"],
                "label": ["a", "b", "c", "d", "e"],
            },
            index=["s1", "s2", "s3", "s4", "s5"],
        )

    def test_numeric_with_intercept(self):
        y, X = build_design(self.table, ModelSpec("y", ("x",)))
        assert list(X.columns) == ["(Intercept)", "x"]
        np.testing.assert_allclose(X["(Intercept)"], 1.0)
        assert list(y.index) == list(self.table.index)

    def test_treatment_coding(self):
        _, X = build_design(self.table, ModelSpec.from_names("y", categorical=["habitat"]))
        assert list(X.columns) == ["(Intercept)", "habitat[T.savanna]", "habitat[T.wetland]"]
        np.testing.assert_allclose(X["habitat[T.savanna]"], [0, 1, 0, 0, 1])
        np.testing.assert_allclose(X["habitat[T.wetland]"], [0, 0, 0, 1, 0])

    def test_full_coding_without_intercept(self):
        _, X = build_design(self.table, ModelSpec.from_names("y", categorical=["habitat"], intercept=False))
        assert list(X.columns) == ["habitat[T.forest]", "habitat[T.savanna]", "habitat[T.wetland]"]
        np.testing.assert_allclose(X.sum(axis=1), 1.0)

    def test_numeric_codes_ordered_by_value(self):
        table = self.table.assign(site=[2, 10, 3, 10, 2])
        _, X = build_design(table, ModelSpec.from_names("y", categorical=["site"]))
        assert list(X.columns) == ["(Intercept)", "site[T.3]", "site[T.10]"]
        np.testing.assert_allclose(X["site[T.10]"], [0, 1, 0, 1, 0])

    def test_categorical_dtype_keeps_declared_order(self):
        habitat = pd.Categorical(
            self.table["habitat"], categories=["wetland", "unused", "savanna", "forest"]
        )
        _, X = build_design(self.table.assign(habitat=habitat), ModelSpec.from_names("y", categorical=["habitat"]))
        assert list(X.columns) == ["(Intercept)", "habitat[T.savanna]", "habitat[T.forest]"]

    def test_non_numeric_predictor(self):
        with pytest.raises(ModelSpecificationError, match="declared numeric"):
            build_design(self.table, ModelSpec("y", ("label",)))

    def test_missing_column(self):
        with pytest.raises(ModelSpecificationError, match="not found"):
            build_design(self.table, ModelSpec("y", ("mass",)))

    def test_single_level_factor(self):
        table = self.table.assign(habitat="forest")
        with pytest.raises(ModelSpecificationError, match="single level"):
            build_design(table, ModelSpec.from_names("y", categorical=["habitat"]))

    def test_missing_values_are_rejected(self):
        table = self.table.copy()
        table.loc["s2", "x"] = np.nan
        with pytest.raises(ModelSpecificationError):
            build_design(table, ModelSpec("y", ("x",)))

    def test_select_complete_rows(self):
        table = self.table.copy()
        table.loc["s2", "x"] = np.nan
        complete = select_complete_rows(table, ModelSpec("y", ("x",)))
        assert list(complete.index) == ["s1", "s3", "s4", "s5"]
        assert list(complete.columns) == ["y", "x"]


class TestPGLSOnExampleData:
    """
    End-to-end fits on the bundled example tree and trait table.
    """
    def setup_method(self, method):
        loader = DataLoader()
        self.tree = loader.load_tree(os.path.join(EXAMPLES_DIR, "example_tree.nwk"))
        self.table = loader.load_trait_table(os.path.join(EXAMPLES_DIR, "example_traits.csv"))

    def test_mismatched_species_are_dropped_with_warning(self):
        with pytest.warns(IdentifierMismatchWarning):
            fit = pgls(self.tree, self.table, ModelSpec("brain_mass", ("body_mass",)))
        assert fit.n_obs == 10
        assert "sp_k" not in fit.residuals.index
        assert "sp_z" not in fit.residuals.index
        assert fit.correlation_model == "brownian"
        assert fit.response_name == "brain_mass"

    def test_positive_allometry(self):
        with pytest.warns(IdentifierMismatchWarning):
            fit = pgls(self.tree, self.table, ModelSpec("brain_mass", ("body_mass",)), Pagel())
        assert fit.params["body_mass"] > 0
        assert 0.0 <= fit.shape_parameter <= 1.0

    def test_categorical_predictor(self):
        spec = ModelSpec.from_names("brain_mass", numeric=["body_mass"], categorical=["habitat"])
        with pytest.warns(IdentifierMismatchWarning):
            fit = pgls(self.tree, self.table, spec)
        assert list(fit.params.index) == [
            "(Intercept)", "body_mass", "habitat[T.savanna]", "habitat[T.wetland]",
        ]

    def test_rows_with_missing_values_are_dropped(self):
        table = self.table.copy()
        table.loc["sp_c", "body_mass"] = np.nan
        with pytest.warns(IdentifierMismatchWarning):
            fit = pgls(self.tree, table, ModelSpec("brain_mass", ("body_mass",)))
        assert fit.n_obs == 9
        assert "sp_c" not in fit.residuals.index
