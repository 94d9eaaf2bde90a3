"""
Tests for the YAML-configured entrypoint.
"""

from pathlib import Path

import pytest
import yaml

from evoprompt.core.fitness import answer_contains, get_metric
from run_evolution import (
    create_evolution_config,
    create_reflection_config,
    load_examples,
    run_evolution,
    validate_config,
)


EXAMPLE_CONFIG = Path(__file__).parent.parent / "config" / "example_config.yaml"


@pytest.fixture
def config():
    with open(EXAMPLE_CONFIG) as f:
        return yaml.safe_load(f)


class TestConfigBuilding:
    """Test config sections become config objects."""

    def test_example_config_valid(self, config):
        validate_config(config)

    def test_evolution_config(self, config):
        evolution_config = create_evolution_config(config)

        assert evolution_config.population_size == 6
        assert evolution_config.random_seed == 42
        assert evolution_config.reflection_model_ref == "gemini-1.5-flash"
        assert evolution_config.experiment_name == "evoprompt_evolution"

    def test_reflection_config(self, config):
        """Test client-only keys are dropped and the model name carried over."""
        reflection_config = create_reflection_config(config)

        assert reflection_config.reflection_model == "gemini-1.5-flash"
        assert reflection_config.overuse_threshold == 2

    def test_examples_from_file(self, tmp_path):
        examples_file = tmp_path / "train.yaml"
        examples_file.write_text(yaml.safe_dump([
            {"inputs": {"question": "What is 1+1?"}, "expected": {"answer": "2"}},
        ]))

        examples = load_examples({"trainset": {"file": str(examples_file)}}, "trainset")

        assert len(examples) == 1
        assert examples[0].inputs["question"] == "What is 1+1?"

    def test_missing_valset(self, config):
        del config["valset"]
        assert load_examples(config, "valset") == []


class TestValidation:
    """Test configuration validation errors."""

    def test_missing_section(self, config):
        del config["trainset"]
        with pytest.raises(ValueError, match="trainset"):
            validate_config(config)

    def test_missing_instruction(self, config):
        config["program"] = {"metric": "exact_match"}
        with pytest.raises(ValueError, match="instruction"):
            validate_config(config)

    def test_unknown_metric(self, config):
        config["program"]["metric"] = "bleu"
        with pytest.raises(ValueError):
            validate_config(config)

    def test_invalid_evolution_value(self, config):
        config["evolution"]["mutation_rate"] = 1.5
        with pytest.raises(ValueError, match="mutation_rate"):
            validate_config(config)

    def test_unknown_evolution_key(self, config):
        config["evolution"]["warp_speed"] = 9
        with pytest.raises(ValueError):
            validate_config(config)

    def test_missing_examples_file(self, config):
        config["trainset"] = {"file": "does/not/exist.yaml"}
        with pytest.raises(ValueError, match="not found"):
            validate_config(config)

    def test_contains_metric_registered(self, config):
        config["program"]["metric"] = "contains"
        validate_config(config)
        assert get_metric("contains") is answer_contains

    def test_dry_run(self, tmp_path, config, capsys):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump(config))

        run_evolution(config_file, dry_run=True)

        assert "configuration validated successfully" in capsys.readouterr().out

    def test_invalid_file_exits(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(SystemExit):
            run_evolution(config_file)
