"""
Run Log Tests
=============
Buffering of package log records and writing of the run log file.
"""

import asyncio
import logging

import pytest

from fleetsync.migration.log import MigrationLog, MigrationLogEntry


class TestMigrationLog:
    """MigrationLog handler"""

    def test_format_line(self):
        entry = MigrationLogEntry("2025-01-01T00:00:00.000Z", "WARNING", "bins: 2 missing")
        assert entry.format_line() == "[2025-01-01T00:00:00.000Z] [WARNING] bins: 2 missing"

    def test_captures_package_records_only_inside_block(self):
        run_log = MigrationLog()
        package_logger = logging.getLogger("fleetsync.migration.test")

        package_logger.info("before")
        with run_log.capture():
            package_logger.info("during")
            package_logger.warning("careful")
            logging.getLogger("elsewhere").warning("unrelated")
        package_logger.info("after")

        assert [e.message for e in run_log.entries] == ["during", "careful"]
        assert run_log.count("WARNING") == 1

    def test_debug_records_are_not_buffered(self):
        run_log = MigrationLog()
        with run_log.capture():
            logging.getLogger("fleetsync").debug("noise")
        assert run_log.entries == []

    def test_logger_level_is_restored(self):
        package_logger = logging.getLogger("fleetsync")
        previous = package_logger.level
        with MigrationLog().capture():
            assert package_logger.getEffectiveLevel() <= logging.INFO
        assert package_logger.level == previous

    def test_flush_to_writes_lines(self, tmp_path):
        run_log = MigrationLog()
        with run_log.capture():
            logging.getLogger("fleetsync").info("hello")

        path = run_log.flush_to(tmp_path / "logs" / "migration-log.txt")

        assert path.read_text().endswith("[INFO] hello\n")

    def test_flush_failure_returns_none(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        assert MigrationLog().flush_to(blocker / "migration-log.txt") is None

    @pytest.mark.asyncio
    async def test_overlapping_runs_keep_their_own_lines(self):
        package_logger = logging.getLogger("fleetsync")
        previous = package_logger.level
        job_logger = logging.getLogger("fleetsync.migration.job")

        async def run(name, run_log):
            with run_log.capture():
                job_logger.info(f"{name} started")
                await asyncio.sleep(0)
                job_logger.info(f"{name} finished")
                await asyncio.sleep(0)

        first, second = MigrationLog(), MigrationLog()
        await asyncio.gather(run("first", first), run("second", second))

        assert [e.message for e in first.entries] == ["first started", "first finished"]
        assert [e.message for e in second.entries] == ["second started", "second finished"]
        assert package_logger.level == previous
        assert package_logger.handlers == []
