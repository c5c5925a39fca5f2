"""Tests for processing a list of services."""

import logging
import pytest
from unittest.mock import call

from compose_project import BuildError, ConfigError, RestartError
from conftest import api_image


class TestUpdateServices:
    """Services are handled in order and independently."""

    def test_not_running_does_not_short_circuit(self, runtime):
        updater = runtime(
            services=["web", "db"],
            running={"db": "c2"},
            digests={"c2": "sha256:d1"},
            images={"db:latest": [api_image("d1", 100)]},
        )

        results = updater.update_services(["web", "db"])

        assert [(r.service, r.status) for r in results] == [
            ("web", "not_running"),
            ("db", "up_to_date"),
        ]

    def test_summary_logged_at_info(self, runtime, caplog, monkeypatch):
        updater = runtime(
            services=["web", "db"],
            running={"db": "c2"},
            digests={"c2": "sha256:old"},
            images={"db:latest": [api_image("new", 200)]},
        )
        updater.compose.recreate.side_effect = RestartError("db", "start", "port in use")
        monkeypatch.setattr(updater.logger, "propagate", True)

        with caplog.at_level(logging.INFO, logger="dc_update"):
            updater.update_services(["web", "db"])

        messages = [r.getMessage() for r in caplog.records if r.levelno == logging.INFO]
        assert "Processed 2 service(s): 0 updated, 1 failed" in messages
        assert "Failed services: db" in messages

    def test_restart_failure_does_not_stop_batch(self, runtime):
        updater = runtime(
            running={"web": "c1", "db": "c2"},
            digests={"c1": "sha256:old", "c2": "sha256:old"},
            images={
                "web:latest": [api_image("new", 200)],
                "db:latest": [api_image("new", 200)],
            },
        )

        def recreate(service):
            if service == "web":
                raise RestartError("web", "remove", "conflict")

        updater.compose.recreate.side_effect = recreate

        results = updater.update_services(["web", "db"])

        assert [r.status for r in results] == ["restart_failed", "updated"]
        assert updater.compose.recreate.call_args_list == [call("web"), call("db")]

    def test_strict_order(self, runtime):
        updater = runtime()

        updater.update_services(["c", "a", "b"])

        assert updater.compose.find_running_container.call_args_list == [
            call("c"), call("a"), call("b"),
        ]


class TestRun:
    """End-to-end run: enumeration, optional build, update."""

    def test_all_services_when_none_given(self, runtime):
        updater = runtime(services=["web", "db"])

        results = updater.run()

        assert [r.service for r in results] == ["web", "db"]

    def test_explicit_services_restrict_processing(self, runtime):
        updater = runtime(services=["web", "db", "cache"])

        results = updater.run(["cache"])

        assert [r.service for r in results] == ["cache"]
        updater.compose.find_running_container.assert_called_once_with("cache")

    def test_explicit_unknown_service_reported(self, runtime):
        updater = runtime(services=["web"])

        results = updater.run(["web", "ghost"])

        assert [r.status for r in results] == ["not_running", "unknown_service"]

    def test_config_error_is_fatal(self, runtime):
        updater = runtime()
        updater.compose.list_service_names.side_effect = ConfigError("bad compose file")

        with pytest.raises(ConfigError):
            updater.run()
        updater.compose.find_running_container.assert_not_called()

    def test_build_runs_before_updates(self, runtime, events):
        updater = runtime(services=["web", "api"])

        updater.run(build=["api"])

        updater.compose.build.assert_called_once_with(["api"])
        names = [e for e, _ in events]
        assert names[:2] == ["building", "built"]
        assert names.index("built") < names.index("checking")

    def test_build_error_is_fatal(self, runtime):
        updater = runtime(services=["web"])
        updater.compose.build.side_effect = BuildError("Failed to build containers api")

        with pytest.raises(BuildError):
            updater.run(build=["api"])
        updater.compose.find_running_container.assert_not_called()

    def test_dry_run_skips_build(self, runtime):
        updater = runtime(services=["web"])
        updater.dry_run = True

        updater.run(build=["web"])

        updater.compose.build.assert_not_called()

    def test_cache_scenario(self, runtime):
        """Running on d1, local images d1@100 and d2@200: restart once."""
        updater = runtime(
            services=["cache"],
            running={"cache": "c9"},
            digests={"c9": "sha256:d1"},
            images={"cache:latest": [api_image("d1", 100), api_image("d2", 200)]},
        )

        results = updater.run()

        assert results[0].status == "updated"
        assert results[0].latest_digest == "d2"
        updater.compose.recreate.assert_called_once_with("cache")
