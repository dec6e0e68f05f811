"""
Performance monitoring, result reports and logging setup.
"""

import json
import logging

from utils.utils import (
    PerformanceMonitor,
    create_performance_report,
    create_results_summary,
    format_duration,
    save_results,
    setup_logging,
)


class TestPerformanceMonitor:

    def test_summary(self):
        monitor = PerformanceMonitor()
        for _ in range(3):
            with monitor.start_operation("prove", batch_size=4):
                pass
        with monitor.start_operation("verify"):
            pass

        summary = monitor.get_summary()
        assert summary['total_operations'] == 4
        assert summary['operations']['prove']['count'] == 3
        assert summary['operations']['verify']['count'] == 1
        assert monitor.metrics[0].additional_data == {'batch_size': 4, 'exception': False}

    def test_empty_summary(self):
        summary = PerformanceMonitor().get_summary()
        assert summary['total_operations'] == 0
        assert "No performance data available." in create_performance_report(PerformanceMonitor())

    def test_exception_is_recorded(self):
        monitor = PerformanceMonitor()
        try:
            with monitor.start_operation("prove"):
                raise ValueError("boom")
        except ValueError:
            pass
        assert monitor.metrics[0].additional_data['exception'] is True

    def test_save_metrics(self, tmp_path):
        monitor = PerformanceMonitor()
        with monitor.start_operation("prove"):
            pass
        monitor.save_metrics(tmp_path / "metrics.json")
        data = json.loads((tmp_path / "metrics.json").read_text())
        assert data['summary']['total_operations'] == 1
        assert 'system_info' in data


class TestReports:

    def test_save_results_stringifies_field_elements(self, tmp_path):
        root = 2 ** 200 + 17
        save_results({'system_metrics': {'state_root': root, 'num_sign_ups': 3},
                      'integrity_checks': {'roots_match': True}}, tmp_path / "run.json")

        data = json.loads((tmp_path / "run.json").read_text())
        assert data['data']['system_metrics']['state_root'] == str(root)
        assert data['data']['system_metrics']['num_sign_ups'] == 3
        summary = (tmp_path / "run_summary.txt").read_text()
        assert "roots_match: PASSED" in summary

    def test_results_summary_sections(self):
        text = create_results_summary({'benchmarks': {'poseidon': {'avg_time': 0.5}}})
        assert "BENCHMARK RESULTS:" in text
        assert "avg_time: 0.5000" in text

    def test_format_duration(self):
        assert format_duration(0.25) == "250.0ms"
        assert format_duration(2.5) == "2.50s"
        assert format_duration(125) == "2m 5.0s"


def test_setup_logging(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    root = logging.getLogger()
    setup_logging("DEBUG", log_file)
    try:
        logging.getLogger("anon_maci.test").debug("hello")
        for handler in root.handlers:
            handler.flush()
        assert "hello" in log_file.read_text()
        assert root.level == logging.DEBUG
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        root.setLevel(logging.WARNING)
