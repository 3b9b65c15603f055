"""
Tests for the click command-line interface.
"""

import json

import pytest
import yaml
from aioresponses import aioresponses
from click.testing import CliRunner
from scoutline.cli import cli

PAGE = "<html><head><title>Alpha</title></head><body><h1>Alpha</h1></body></html>"


def fast_queue(concurrency, attempts):
    return {
        "concurrency": concurrency,
        "max_attempts": attempts,
        "backoff_base_seconds": 0.01,
        "backoff_max_seconds": 0.05,
        "idle_poll_seconds": 0.01,
    }


@pytest.fixture
def config_file(temp_dir):
    path = temp_dir / "scoutline.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "queues": {
                    "scraping": fast_queue(3, 2),
                    "analysis": fast_queue(1, 1),
                    "ai_analysis": fast_queue(1, 1),
                },
                "pipeline": {"poll_interval_seconds": 0.05, "max_wait_seconds": 5, "scrape_jitter_seconds": 0},
                "storage": {"backend": "sqlite", "db_path": str(temp_dir / "cli.db")},
                "scraper": {"check_robots": False, "check_sitemap": False},
                "monitoring": {"enabled": False},
            }
        )
    )
    return path


class TestCli:
    def test_config_check(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "config-check"])

        assert result.exit_code == 0, result.output
        assert "storage.backend" in result.output
        assert "Configuration is valid" in result.output

    def test_config_check_rejects_invalid_file(self, temp_dir):
        path = temp_dir / "bad.yaml"
        path.write_text("pipeline:\n  poll_interval_seconds: 10\n  max_wait_seconds: 1\n")

        result = CliRunner().invoke(cli, ["--config", str(path), "config-check"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_stats_on_empty_database(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "stats"])

        assert result.exit_code == 0, result.output
        assert "ai-analysis" in result.output
        assert "processing" in result.output

    def test_analyze_writes_record(self, config_file, temp_dir):
        output_path = temp_dir / "analysis.json"
        with aioresponses() as mocked:
            mocked.get("https://alpha.com", status=200, body=PAGE, repeat=True)

            result = CliRunner().invoke(
                cli,
                ["--config", str(config_file), "analyze", "alpha.com", "--timeout", "10", "-o", str(output_path)],
            )

        assert result.exit_code == 0, result.output
        assert "Risk level" in result.output
        record = json.loads(output_path.read_text())
        assert record["status"] == "completed"
        assert record["targets"] == ["alpha.com"]
        assert record["insights"]["source"] == "heuristic"

    def test_analyze_failure_exits_nonzero(self, config_file):
        with aioresponses() as mocked:
            mocked.get("https://down.com", status=503, repeat=True)

            result = CliRunner().invoke(cli, ["--config", str(config_file), "analyze", "down.com", "--timeout", "10"])

        assert result.exit_code == 1
        assert "Scraping failed for all 1 competitor domains" in result.output

    def test_analyze_rejects_invalid_domain(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "analyze", "not a domain"])

        assert result.exit_code == 2
        assert "Invalid domain" in result.output
