"""Configuration management for the Anonymous MACI system."""

from .config import SystemConfig, MaciConfig, ProverConfig, load_config, save_config

__all__ = ['SystemConfig', 'MaciConfig', 'ProverConfig', 'load_config', 'save_config']
