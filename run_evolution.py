#!/usr/bin/env python3
"""
evoprompt Entrypoint - Run instruction evolution from YAML configuration.

This entrypoint builds every component from a YAML config file, providing
more flexibility than the factory function create_optimizer.

Usage:
    python run_evolution.py config.yaml
    python run_evolution.py --config config.yaml
    python run_evolution.py --config config.yaml --dry-run
"""

import argparse
import logging
import sys
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional

from evoprompt.entities import ConfigurationError, Example
from evoprompt.core import (
    GEPAOptimizer,
    EvolutionConfig,
    EvaluationConfig,
    ReflectionConfig,
)
from evoprompt.core.fitness import get_metric
from evoprompt.llm import GeminiProgram, create_llm_client


REQUIRED_SECTIONS = ['program', 'trainset']
REFLECTION_CLIENT_KEYS = {'use_llm'}


def setup_logging():
    """Setup basic logging configuration."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def create_evolution_config(config_dict: Dict[str, Any]) -> EvolutionConfig:
    """Create EvolutionConfig from configuration dictionary."""
    evolution_config = dict(config_dict.get('evolution') or {})
    mlflow_config = config_dict.get('mlflow') or {}
    llm_config = config_dict.get('llm') or {}

    if llm_config.get('model_name') and 'reflection_model_ref' not in evolution_config:
        evolution_config['reflection_model_ref'] = llm_config['model_name']

    return EvolutionConfig(
        **evolution_config,
        experiment_name=mlflow_config.get('experiment_name', 'evoprompt_evolution'),
        log_artifacts=mlflow_config.get('log_artifacts', True),
        tracking_uri=mlflow_config.get('tracking_uri')
    )


def create_evaluation_config(config_dict: Dict[str, Any]) -> EvaluationConfig:
    """Create EvaluationConfig from configuration dictionary."""
    return EvaluationConfig(**(config_dict.get('evaluation') or {}))


def create_reflection_config(config_dict: Dict[str, Any]) -> ReflectionConfig:
    """Create ReflectionConfig from configuration dictionary."""
    reflection_config = {
        key: value for key, value in (config_dict.get('reflection') or {}).items()
        if key not in REFLECTION_CLIENT_KEYS
    }
    llm_config = config_dict.get('llm') or {}
    reflection_config.setdefault('reflection_model', llm_config.get('model_name'))
    return ReflectionConfig(**reflection_config)


def create_llm_client_from_config(config_dict: Dict[str, Any]):
    """Create LLM client from configuration dictionary."""
    llm_config = config_dict.get('llm') or {}

    provider = llm_config.get('provider', 'gemini')
    model_name = llm_config.get('model_name')
    llm_params = dict(llm_config.get('params') or {})

    # Handle API key
    api_key = llm_config.get('api_key')
    if api_key:
        llm_params['api_key'] = api_key

    return create_llm_client(provider, model_name, **llm_params)


def load_examples(config_dict: Dict[str, Any], section: str) -> List[Example]:
    """Load examples inline or from a YAML file referenced by 'file'."""
    data = config_dict.get(section)
    if not data:
        return []
    if isinstance(data, dict) and 'file' in data:
        path = Path(data['file'])
        if not path.exists():
            raise FileNotFoundError(f"{section} file not found: {path}")
        data = yaml.safe_load(path.read_text()) or []
    return [Example.from_dict(item) for item in data]


def validate_config(config: Optional[Dict[str, Any]]) -> None:
    """Validate the configuration dictionary and every config section."""
    if not isinstance(config, dict):
        raise ValueError("Configuration file must contain a mapping")

    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise ValueError(f"Missing required configuration section: {section}")

    program = config['program'] or {}
    if not program.get('instruction'):
        raise ValueError("Program configuration must specify an 'instruction'")

    try:
        get_metric(program.get('metric', 'exact_match'))
        if not load_examples(config, 'trainset'):
            raise ValueError("trainset must contain at least one example")
        load_examples(config, 'valset')
        create_evolution_config(config)
        create_evaluation_config(config)
        create_reflection_config(config)
    except (ConfigurationError, TypeError, FileNotFoundError) as e:
        raise ValueError(str(e))


def run_evolution(config_file: Path, dry_run: bool = False) -> None:
    """Run the instruction evolution from configuration file."""
    # Load configuration
    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f)
    except Exception as e:
        print(f"Error loading configuration file: {e}")
        sys.exit(1)

    # Validate configuration
    try:
        validate_config(config)
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)

    if dry_run:
        print("Dry run mode - configuration validated successfully!")
        return

    optimizer = None
    try:
        logger.info("Creating optimizer components...")

        evolution_config = create_evolution_config(config)
        llm_client = create_llm_client_from_config(config)
        use_llm_reflection = (config.get('reflection') or {}).get('use_llm', True)

        optimizer = GEPAOptimizer(
            metric=get_metric(config['program'].get('metric', 'exact_match')),
            config=evolution_config,
            evaluation_config=create_evaluation_config(config),
            reflection_config=create_reflection_config(config),
            reflection_lm=llm_client if use_llm_reflection else None,
            instruction_proposer=llm_client,
        )

        program = GeminiProgram(llm_client, config['program']['instruction'])
        trainset = load_examples(config, 'trainset')
        valset = load_examples(config, 'valset')

        logger.info("Starting instruction evolution...")
        result = optimizer.compile(program, trainset, valset or None)

        # Print final results
        print("\n" + "=" * 60)
        print("Evolution Complete!")
        print("=" * 60)

        print(f"Generations run: {result.metadata.get('generation_count', 0)}")
        print(f"Best {result.best_score_name}: {result.best_score_value:.4f}")
        for name, value in sorted(result.scores.items()):
            print(f"  {name}: {value:.4f}")
        if result.metadata.get('fallback'):
            print(f"Optimization fell back to the seed program: {result.metadata.get('error')}")
        if result.metadata.get('reflection_summary'):
            print(f"\nReflection: {result.metadata['reflection_summary']}")

        print(f"\nBest instruction:")
        print("-" * 40)
        print(result.best_instruction)
        print("-" * 40)

        llm_stats = llm_client.get_usage_stats()
        print(f"LLM requests: {llm_stats['total_requests']} "
              f"({llm_stats['failed_requests']} failed, {llm_stats['total_tokens']} tokens)")

    except KeyboardInterrupt:
        logger.info("Evolution interrupted by user")
        print("\nEvolution interrupted!")
    except Exception as e:
        logger.error(f"Evolution failed: {e}", exc_info=True)
        print(f"Evolution failed: {e}")
        sys.exit(1)
    finally:
        if optimizer is not None:
            optimizer.cleanup()


def main():
    """Main entrypoint."""
    parser = argparse.ArgumentParser(
        description="Run evoprompt genetic-Pareto instruction optimization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_evolution.py config.yaml
  python run_evolution.py --config my_config.yaml
  python run_evolution.py --config config.yaml --dry-run
  python run_evolution.py --example-config > example.yaml
        """
    )

    parser.add_argument(
        'config_file',
        nargs='?',
        type=Path,
        help='Path to YAML configuration file'
    )

    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to YAML configuration file (alternative to positional argument)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate configuration without running evolution'
    )

    parser.add_argument(
        '--example-config',
        action='store_true',
        help='Print an example configuration file and exit'
    )

    args = parser.parse_args()

    if args.example_config:
        example_config_path = Path(__file__).parent / "config" / "example_config.yaml"
        try:
            with open(example_config_path, 'r') as f:
                print(f.read())
        except FileNotFoundError:
            print("Error: Example configuration file not found.")
            sys.exit(1)
        return

    # Determine config file
    config_file = args.config or args.config_file
    if not config_file:
        parser.error("Configuration file is required (provide as positional argument or with --config)")

    if not config_file.exists():
        print(f"Error: Configuration file not found: {config_file}")
        sys.exit(1)

    run_evolution(config_file, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
