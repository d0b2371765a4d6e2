"""
Configuration package for the reconciliation engine.

Provides environment detection and the EngineConfig value object.

Usage:
    from Config import env, load_engine_config
    env.load()
    config = load_engine_config()
    print(f"Running in {env.env_name} mode, batch size {config.sweep_batch_size}")
"""

from Config.environment import env, is_docker, env_name
from Config import constants_core
from Config.config_manager import EngineConfig, load_engine_config

__all__ = [
    'env',
    'is_docker',
    'env_name',
    'constants_core',
    'EngineConfig',
    'load_engine_config',
]
