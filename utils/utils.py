"""
Utilities for the Anonymous MACI system
Logging setup, prover performance monitoring and run reports
"""

import logging
import json
import time
import platform
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, field, is_dataclass
from enum import Enum

import numpy as np
import psutil

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'

# JSON consumers lose precision past 2^53
MAX_SAFE_INTEGER_BITS = 53


@dataclass
class PerformanceMetrics:
    """One timed operation; batch operations carry their message count"""
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def messages(self) -> int:
        return int(self.additional_data.get('batch_size', 0))


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Route every module logger to a run log file and the console"""
    if log_file is None:
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_file = Path("logs") / f"anon_maci_{stamp}.log"
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )
    # galois compiles field kernels through numba, which is chatty at DEBUG
    for noisy in ("asyncio", "numba"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at {log_level.upper()}. Log file: {log_file}")
    return logger


def _duration_stats(durations: np.ndarray) -> Dict[str, float]:
    total = float(durations.sum())
    return {
        'total_duration': total,
        'avg_duration': float(durations.mean()),
        'min_duration': float(durations.min()),
        'max_duration': float(durations.max()),
        'std_duration': float(durations.std()) if durations.size > 1 else 0.0,
        'p95_duration': float(np.percentile(durations, 95)),
    }


class PerformanceMonitor:
    """Per-operation timing, CPU and RSS samples for the prover pipeline"""

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str, **additional_data) -> 'OperationContext':
        return OperationContext(self, operation_name, additional_data)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def by_operation(self) -> Dict[str, List[PerformanceMetrics]]:
        groups: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            groups.setdefault(metric.operation, []).append(metric)
        return groups

    def get_summary(self) -> Dict[str, Any]:
        operations = {}
        for name, metrics in self.by_operation().items():
            durations = np.array([m.duration_seconds for m in metrics])
            stats = _duration_stats(durations)
            cpu = [m.cpu_percent for m in metrics if m.cpu_percent > 0]
            memory = [m.memory_mb for m in metrics if m.memory_mb > 0]
            messages = sum(m.messages for m in metrics)
            total = stats['total_duration']

            operations[name] = {
                'count': len(metrics),
                **stats,
                'avg_cpu_percent': float(np.mean(cpu)) if cpu else 0.0,
                'avg_memory_mb': float(np.mean(memory)) if memory else 0.0,
                'peak_memory_mb': max(memory) if memory else 0.0,
                'throughput_ops_per_sec': len(metrics) / total if total > 0 else 0.0,
                'messages': messages,
                'messages_per_sec': messages / total if total > 0 and messages else 0.0,
                'failures': sum(1 for m in metrics if m.additional_data.get('exception')),
            }

        return {
            'total_operations': len(self.metrics),
            'total_duration': sum(op['total_duration'] for op in operations.values()),
            'operations': operations,
        }

    def save_metrics(self, filepath: Path):
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            'metrics': [asdict(m) for m in self.metrics],
            'summary': self.get_summary(),
            'system_info': get_system_info(),
            'timestamp': datetime.now().isoformat(),
        }
        with open(filepath, 'w') as f:
            json.dump(payload, f, indent=2, default=str)

    def reset(self):
        self.metrics.clear()


class OperationContext:
    """Times one block; an escaping exception is recorded, never suppressed"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str,
                 additional_data: Optional[Dict[str, Any]] = None):
        self.monitor = monitor
        self.operation_name = operation_name
        self.additional_data = additional_data or {}
        self.start_time = 0.0
        self.start_memory = 0.0

    def _rss_mb(self) -> float:
        return self.monitor.process.memory_info().rss / (1024 * 1024)

    def __enter__(self):
        self.start_time = time.time()
        # primes psutil's cpu counter
        self.monitor.process.cpu_percent()
        self.start_memory = self._rss_mb()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=time.time() - self.start_time,
            cpu_percent=self.monitor.process.cpu_percent(),
            memory_mb=max(self.start_memory, self._rss_mb()),
            timestamp=self.start_time,
            additional_data={**self.additional_data, 'exception': exc_type is not None},
        ))


def get_system_info() -> Dict[str, Any]:
    vm = psutil.virtual_memory()
    gib = 1024 ** 3
    return {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'cpu_count_physical': psutil.cpu_count(logical=False),
        'cpu_count_logical': psutil.cpu_count(logical=True),
        'total_memory_gb': round(vm.total / gib, 2),
        'available_memory_gb': round(vm.available / gib, 2),
        'timestamp': datetime.now().isoformat(),
    }


def to_serializable(obj):
    """JSON-ready copy of run results; field elements become decimal strings"""
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_serializable(asdict(obj))
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(item) for item in obj]
    if isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int) and obj.bit_length() > MAX_SAFE_INTEGER_BITS:
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, (Path, datetime)):
        return str(obj)
    return obj


def save_results(results: Dict[str, Any], filepath: Path):
    """Write results as JSON with a plain-text summary beside it"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    document = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
            'file_path': str(filepath),
        },
        'data': to_serializable(results),
    }
    with open(filepath, 'w') as f:
        json.dump(document, f, indent=2, default=str)

    summary_path = filepath.with_name(f"{filepath.stem}_summary.txt")
    summary_path.write_text(create_results_summary(results))

    logging.info(f"Results saved to {filepath} (summary: {summary_path})")


def _banner(title: str) -> List[str]:
    return ["=" * 80, f"ANONYMOUS MACI - {title}", "=" * 80,
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"]


def create_results_summary(results: Dict[str, Any]) -> str:
    lines = _banner("RESULTS SUMMARY")
    lines.append("")

    if 'system_metrics' in results:
        lines.append("LEDGER STATE:")
        for key, value in results['system_metrics'].items():
            if not isinstance(value, dict):
                lines.append(f"  {key}: {value}")
        lines.append("")

    if 'batches' in results:
        lines.append("BATCHES:")
        for batch in to_serializable(results['batches']):
            lines.append(
                f"  {batch.get('kind')}: {batch.get('status')} "
                f"(size={batch.get('batch_size')}, "
                f"nullifiers={len(batch.get('nullifiers') or [])}, "
                f"time={float(batch.get('processing_time', 0.0)):.3f}s)")
            if batch.get('error'):
                lines.append(f"    {batch.get('error_type')}: {batch['error']}")
        lines.append("")

    if 'benchmarks' in results:
        lines.append("BENCHMARK RESULTS:")
        for name, data in results['benchmarks'].items():
            lines.append(f"  {name}:")
            if not isinstance(data, dict):
                continue
            for key, value in data.items():
                rendered = f"{value:.4f}" if isinstance(value, float) else value
                lines.append(f"    {key}: {rendered}")
        lines.append("")

    if 'integrity_checks' in results:
        lines.append("INTEGRITY CHECKS:")
        for check, passed in results['integrity_checks'].items():
            lines.append(f"  {check}: {'PASSED' if passed else 'FAILED'}")
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)


def create_performance_report(metrics: PerformanceMonitor) -> str:
    summary = metrics.get_summary()

    lines = _banner("PERFORMANCE REPORT")
    lines.append(f"Total Operations: {summary['total_operations']}")
    lines.append(f"Total Duration: {format_duration(summary['total_duration'])}")
    lines.append("")

    if not summary['operations']:
        lines.append("No performance data available.")

    for name, op in summary['operations'].items():
        lines.append(f"{name.upper()}:")
        lines.append(f"  Executions: {op['count']} ({op['failures']} failed)")
        lines.append(f"  Total Time: {format_duration(op['total_duration'])}")
        lines.append(f"  Average / p95: {op['avg_duration']:.4f}s / {op['p95_duration']:.4f}s")
        lines.append(f"  Min / Max: {op['min_duration']:.4f}s / {op['max_duration']:.4f}s")
        if op['messages']:
            lines.append(f"  Messages: {op['messages']} ({op['messages_per_sec']:.2f} msg/sec)")
        else:
            lines.append(f"  Throughput: {op['throughput_ops_per_sec']:.2f} ops/sec")
        if op['peak_memory_mb'] > 0:
            lines.append(f"  Peak Memory: {op['peak_memory_mb']:.1f} MB")
        lines.append("")

    lines.append("=" * 80)
    return "\n".join(lines)


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.1f}s"


__all__ = [
    'PerformanceMetrics',
    'PerformanceMonitor',
    'OperationContext',
    'setup_logging',
    'get_system_info',
    'to_serializable',
    'save_results',
    'create_results_summary',
    'create_performance_report',
    'format_duration',
]
