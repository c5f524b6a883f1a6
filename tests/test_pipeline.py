import os

import pytest

from pgls.analysis.comparative_methods import ModelSpec
from pgls.core.config import DefaultConfig
from pgls.core.data_loader import DataLoader
from pgls.core.exceptions import IdentifierMismatchWarning
from pgls.core.framework import PGLSFramework
from pgls.core.pipeline import Pipeline
from pgls.methods.correlation import Brownian, Pagel

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")
TREE_FILE = os.path.join(EXAMPLES_DIR, "example_tree.nwk")
TRAITS_FILE = os.path.join(EXAMPLES_DIR, "example_traits.csv")

SPEC = ModelSpec("brain_mass", ("body_mass",))

pytestmark = pytest.mark.filterwarnings("ignore::pgls.core.exceptions.IdentifierMismatchWarning")


class TestPipeline:
    """
    Tests for the Pipeline class.
    """
    def setup_method(self, method):
        loader = DataLoader()
        self.data = (loader.load_tree(TREE_FILE), loader.load_trait_table(TRAITS_FILE))
        self.pipeline = Pipeline(DefaultConfig())

    def test_default_label_and_storage(self):
        fit = self.pipeline.run_analysis(self.data, SPEC)
        label = "brain_mass ~ 1 + body_mass [brownian, REML]"
        assert self.pipeline.results == {label: fit}

    def test_configured_correlation_is_default(self):
        config = DefaultConfig().update({"correlation_model": "pagel", "estimation_method": "ML"})
        fit = Pipeline(config).run_analysis(self.data, SPEC)
        assert fit.correlation_model == "pagel"
        assert fit.shape_parameter_estimated
        assert fit.method == "ML"

    def test_duplicate_label(self):
        self.pipeline.run_analysis(self.data, SPEC, label="m")
        with pytest.raises(ValueError, match="already exists"):
            self.pipeline.run_analysis(self.data, SPEC, label="m")

    def test_bad_data(self):
        with pytest.raises(ValueError, match="pair"):
            self.pipeline.run_analysis(self.data[0], SPEC)

    def test_compare_stored_fits(self):
        self.pipeline.run_analysis(self.data, SPEC, Brownian(), label="bm")
        self.pipeline.run_analysis(self.data, SPEC, Pagel(), label="lambda")
        result = self.pipeline.compare("bm", "lambda")
        assert result.df == 1
        assert result.statistic >= 0.0

    def test_compare_unknown_label(self):
        with pytest.raises(KeyError):
            self.pipeline.compare("bm", "lambda")


class TestPGLSFramework:
    """
    Tests for the PGLSFramework entry point.
    """
    def setup_method(self, method):
        self.framework = PGLSFramework()

    def test_fit_before_loading(self):
        with pytest.raises(ValueError, match="load_data"):
            self.framework.fit(SPEC)

    def test_load_fit_and_summarise(self):
        report = self.framework.load_data(TREE_FILE, TRAITS_FILE)
        assert report.missing_from_table == ("sp_k",)

        with pytest.warns(IdentifierMismatchWarning):
            fit = self.framework.fit(SPEC, Pagel(), method="ML", label="lambda")
        assert fit.n_obs == 10
        assert self.framework.results["lambda"] is fit
        assert "Coefficients:" in self.framework.summary("lambda")

        self.framework.fit(ModelSpec("brain_mass"), Pagel(), method="ML", label="null")
        result = self.framework.compare("null", "lambda")
        assert result.df == 1

    def test_reduced_model_uses_rows_of_full_model(self):
        self.framework.load_data(TREE_FILE, TRAITS_FILE)
        self.framework.table.loc["sp_c", "body_mass"] = float("nan")

        full = self.framework.fit(SPEC, Brownian(), method="ML", label="full")
        null = self.framework.fit(ModelSpec("brain_mass"), Brownian(), method="ML", label="null", rows_of=SPEC)
        assert full.n_obs == null.n_obs == 9
        assert "sp_c" not in null.residuals.index
        assert self.framework.compare("null", "full").df == 1

    def test_summary_of_unknown_label(self):
        with pytest.raises(KeyError):
            self.framework.summary("nothing")
