"""Tests for the stage table: applicability and executor inputs."""

from cadstudio.orchestrator.schemas import STAGE_NAMES, AnalyzeOptions
from cadstudio.orchestrator.stages import (
    STAGES,
    StageContext,
    dfm_score,
    has_assembly,
    has_geometry,
    is_direct_import,
)

BY_NAME = {spec.name: spec for spec in STAGES}


def build(stage, config, options=None, ctx=None):
    return BY_NAME[stage].build_input(config, options or AnalyzeOptions(), ctx or StageContext())


def applicable(stage, config, options=None):
    return BY_NAME[stage].is_applicable(config, options or AnalyzeOptions())


class TestStageTable:
    def test_fixed_order(self):
        assert tuple(spec.name for spec in STAGES) == STAGE_NAMES

    def test_scripts(self):
        assert {spec.name: spec.script for spec in STAGES} == {
            "create": "create_model.py",
            "drawing": "generate_drawing.py",
            "dfm": "dfm_checker.py",
            "tolerance": "tolerance_analysis.py",
            "cost": "cost_estimator.py",
        }

    def test_key_extras(self):
        ctx = StageContext(shop_profile={"name": "shop_a"}, outputs={"dfm": {"score": 72}})
        assert BY_NAME["create"].key_extras(ctx) == {}
        assert BY_NAME["dfm"].key_extras(ctx) == {"shopProfile": {"name": "shop_a"}}
        assert BY_NAME["cost"].key_extras(ctx) == {"shopProfile": {"name": "shop_a"}, "dfm_score": 72}


class TestConfigPredicates:
    def test_has_geometry(self):
        assert has_geometry({"shapes": [{"type": "box"}]})
        assert has_geometry({"parts": [{"id": "p"}]})
        assert not has_geometry({"shapes": [], "parts": []})
        assert not has_geometry({"shapes": {"type": "box"}})

    def test_is_direct_import(self):
        assert is_direct_import({"import": {"source_step": "parts/housing.step"}})
        assert not is_direct_import({"import": {"source_step": "a.step"}, "shapes": [{"type": "box"}]})
        assert not is_direct_import({"import": {"source_step": ""}})
        assert not is_direct_import({"import": "a.step"})

    def test_has_assembly(self):
        assert has_assembly({"assembly": {"mates": []}, "parts": [{"id": "p"}]})
        assert not has_assembly({"assembly": {"mates": []}, "parts": []})
        assert not has_assembly({"parts": [{"id": "p"}]})

    def test_dfm_score(self):
        assert dfm_score(StageContext(outputs={"dfm": {"score": 64}})) == 64
        assert dfm_score(StageContext(outputs={"dfm": ["not", "a", "dict"]})) is None
        assert dfm_score(StageContext()) is None


class TestApplicability:
    def test_stages_enabled_by_default(self, sample_config):
        assert all(applicable(name, sample_config) for name in STAGE_NAMES)

    def test_explicit_false_disables(self, sample_config):
        options = AnalyzeOptions(drawing=False, cost=False)
        assert not applicable("drawing", sample_config, options)
        assert not applicable("cost", sample_config, options)
        assert applicable("dfm", sample_config, options)

    def test_create_cannot_be_disabled(self, sample_config):
        assert applicable("create", sample_config, AnalyzeOptions.model_validate({"create": False}))

    def test_tolerance_needs_assembly(self, sample_config):
        config = {k: v for k, v in sample_config.items() if k != "assembly"}
        assert not applicable("tolerance", config)
        assert not applicable("tolerance", sample_config, AnalyzeOptions(tolerance=False))


class TestInputBuilders:
    def test_create_passes_config(self, sample_config):
        payload = build("create", sample_config)
        assert payload == sample_config
        assert payload is not sample_config

    def test_drawing_dxf_flag(self, sample_config):
        payload = build("drawing", sample_config, AnalyzeOptions(dxf_export=True))
        assert payload["drawing"]["dxf"] is True
        assert "dxf" not in sample_config["drawing"]

    def test_drawing_without_dxf(self):
        assert build("drawing", {"shapes": [{}]})["drawing"] == {}

    def test_dfm_defaults_process(self):
        payload = build("dfm", {"shapes": [{}]})
        assert payload["manufacturing"] == {"process": "machining"}
        assert "shop_profile" not in payload

    def test_dfm_option_overrides(self, sample_config):
        ctx = StageContext(shop_profile={"name": "shop_a"})
        payload = build("dfm", sample_config, AnalyzeOptions(process="casting", material="A36"), ctx)
        assert payload["manufacturing"] == {"process": "casting", "material": "A36"}
        assert payload["shop_profile"] == {"name": "shop_a"}
        assert sample_config["manufacturing"]["process"] == "machining"

    def test_tolerance_monte_carlo(self, sample_config):
        options = AnalyzeOptions(monte_carlo=True, mc_samples="2500.9")
        payload = build("tolerance", sample_config, options)
        assert payload["tolerance"]["monte_carlo"] is True
        assert payload["tolerance"]["mc_samples"] == 2500

    def test_tolerance_rejects_bad_samples(self, sample_config):
        for samples in (True, -10, 0, "lots", float("nan"), None):
            payload = build("tolerance", sample_config, AnalyzeOptions(mc_samples=samples))
            assert "mc_samples" not in payload["tolerance"]

    def test_tolerance_monte_carlo_false_is_kept(self, sample_config):
        payload = build("tolerance", sample_config, AnalyzeOptions(monte_carlo=False))
        assert payload["tolerance"]["monte_carlo"] is False

    def test_cost_defaults(self):
        payload = build("cost", {"shapes": [{}]})
        assert payload["material"] == "SS304"
        assert payload["process"] == "machining"
        assert payload["batch_size"] == 1
        assert payload["dfm_result"] is None

    def test_cost_uses_config_then_options(self, sample_config):
        ctx = StageContext(shop_profile={"name": "shop_a"}, outputs={"dfm": {"score": 80}})
        payload = build("cost", sample_config, ctx=ctx)
        assert payload["material"] == "AL6061"
        assert payload["dfm_result"] == {"score": 80}
        assert payload["shop_profile"] == {"name": "shop_a"}

        payload = build("cost", sample_config, AnalyzeOptions(material="A36", batch=250), ctx)
        assert payload["material"] == "A36"
        assert payload["batch_size"] == 250
