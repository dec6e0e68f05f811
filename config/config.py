from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

from zk.circuits import CircuitParameters


@dataclass
class MaciConfig:
    max_batch_size: int = 32
    state_tree_depth: int = 10
    max_vote_options: int = 16
    initial_credit_balance: int = 100

    def __post_init__(self):
        # Raises on an impossible circuit shape
        self.circuit_parameters()
        if not 0 <= self.initial_credit_balance < 2 ** 64:
            raise ValueError("initial_credit_balance must fit in 64 bits")

    def circuit_parameters(self) -> CircuitParameters:
        return CircuitParameters(
            max_batch_size=self.max_batch_size,
            state_tree_depth=self.state_tree_depth,
            max_vote_options=self.max_vote_options,
        )


@dataclass
class ProverConfig:
    backend: str = "transparent"
    proof_ttl: int = 3600
    prover_workers: int = 2

    def __post_init__(self):
        if self.backend not in ("transparent",):
            raise ValueError(f"Unknown proof backend: {self.backend}")


@dataclass
class SystemConfig:
    maci_config: MaciConfig = field(default_factory=MaciConfig)
    prover_config: ProverConfig = field(default_factory=ProverConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    ledger_snapshot: Optional[Path] = None
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)
        if self.ledger_snapshot is not None:
            self.ledger_snapshot = Path(self.ledger_snapshot)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)


def _config_from_dict(config_data: Dict[str, Any]) -> SystemConfig:
    maci_data = config_data.get('maci', {})
    maci_config = MaciConfig(
        max_batch_size=maci_data.get('max_batch_size', 32),
        state_tree_depth=maci_data.get('state_tree_depth', 10),
        max_vote_options=maci_data.get('max_vote_options', 16),
        initial_credit_balance=maci_data.get('initial_credit_balance', 100),
    )

    prover_data = config_data.get('prover', {})
    prover_config = ProverConfig(
        backend=prover_data.get('backend', 'transparent'),
        proof_ttl=prover_data.get('proof_ttl', 3600),
        prover_workers=prover_data.get('prover_workers', 2),
    )

    snapshot = config_data.get('ledger_snapshot')
    return SystemConfig(
        maci_config=maci_config,
        prover_config=prover_config,
        log_dir=Path(config_data.get('log_dir', 'logs')),
        results_dir=Path(config_data.get('results_dir', 'results')),
        ledger_snapshot=Path(snapshot) if snapshot else None,
        enable_debug_mode=config_data.get('enable_debug_mode', False),
    )


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            return _config_from_dict(config_data)
        except (OSError, yaml.YAMLError, TypeError, ValueError, AttributeError) as e:
            print(f"Warning: Could not load config file {config_path}: {e}")
            print("Using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    config_data = {
        'maci': {
            'max_batch_size': config.maci_config.max_batch_size,
            'state_tree_depth': config.maci_config.state_tree_depth,
            'max_vote_options': config.maci_config.max_vote_options,
            'initial_credit_balance': config.maci_config.initial_credit_balance,
        },
        'prover': {
            'backend': config.prover_config.backend,
            'proof_ttl': config.prover_config.proof_ttl,
            'prover_workers': config.prover_config.prover_workers,
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'ledger_snapshot': str(config.ledger_snapshot) if config.ledger_snapshot else None,
        'enable_debug_mode': config.enable_debug_mode,
    }

    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
