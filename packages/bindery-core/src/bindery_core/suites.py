"""Language test suites run against assembled bundles.

Each case of a suite moves queued -> running -> passed/failed/skipped.
Cases excluded by the active tag filter are reported as skipped and never
executed, and a report with no executed case does not pass. Cases run one
after another unless the suite declares ``parallel: true``. ``run_all`` runs
different languages concurrently and the bundles of one language in order.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor

import structlog

from bindery_core.config import PipelineConfig, SuiteConfig, TagFilter, TestCaseSpec
from bindery_core.errors import ConfigurationError, PipelineCancelled
from bindery_core.models import Bundle, TestCaseResult, TestReport, TestStatus
from bindery_core.process import CancellationToken, render_command, render_env, run_command

logger = structlog.get_logger(__name__)

BUNDLE_ENV_VAR = "BINDERY_BUNDLE"

# Characters of failing test output kept in the report
MESSAGE_TAIL_CHARS = 2000


class TestRunner:
    """Run each language's generated-binding test suite.

    Example:
        >>> runner = TestRunner(config)
        >>> report = runner.run(bundle, "offline")
        >>> report.count(TestStatus.SKIPPED)
        2
    """

    __test__ = False

    def __init__(self, config: PipelineConfig, token: CancellationToken | None = None) -> None:
        self.config = config
        self.token = token or CancellationToken()
        self._log = logger.bind(component="test_runner")

    def run(self, bundle: Bundle, filter: str | TagFilter | None = None) -> TestReport:
        """Run the suite for the bundle's language.

        Args:
            bundle: Bundle under test.
            filter: Named filter from the config, an explicit TagFilter, or
                None to run everything.

        Returns:
            TestReport. Its status is FAILED if any case failed, SKIPPED if
            the run was cancelled before the suite finished or the filter
            left no case to execute.

        Raises:
            ConfigurationError: If no suite is configured for the language or
                the filter name is unknown.
        """
        suite = self.config.suite_for(bundle.language)
        if suite is None:
            raise ConfigurationError(f"No test suite configured for {bundle.language}")

        if isinstance(filter, TagFilter):
            tag_filter, filter_name = filter, "custom"
        else:
            tag_filter, filter_name = self.config.tag_filter(filter), filter

        log = self._log.bind(language=bundle.language, bundle=bundle.name, filter=filter_name)
        selected = [case for case in suite.cases if tag_filter.selects(case.tags)]
        log.info("suite_started", cases=len(suite.cases), selected=len(selected))

        def run_case(case: TestCaseSpec) -> TestCaseResult:
            if not tag_filter.selects(case.tags):
                return _result(case, TestStatus.SKIPPED, message=f"excluded by filter '{filter_name}'")
            return self._run_case(suite, bundle, case)

        if suite.parallel and len(suite.cases) > 1:
            with ThreadPoolExecutor(
                max_workers=min(len(suite.cases), self.config.concurrency),
                thread_name_prefix=f"bindery-test-{bundle.language}",
            ) as pool:
                results = list(pool.map(run_case, suite.cases))
        else:
            results = [run_case(case) for case in suite.cases]

        report = TestReport(
            language=bundle.language,
            bundle=bundle.name,
            filter=filter_name,
            results=results,
            status=_overall(results, cancelled=self.token.cancelled),
        )
        log.info(
            "suite_completed",
            status=report.status.value,
            passed=report.count(TestStatus.PASSED),
            failed=report.count(TestStatus.FAILED),
            skipped=report.count(TestStatus.SKIPPED),
        )
        return report

    def run_all(
        self, bundles: Iterable[Bundle], filter: str | TagFilter | None = None
    ) -> dict[str, TestReport]:
        """Run suites for several bundles, languages in parallel.

        Bundles of the same language share the suite's working directory,
        so they run one after another on that language's worker.

        Returns:
            Bundle name -> TestReport.
        """
        by_language: dict[str, list[Bundle]] = {}
        for bundle in bundles:
            by_language.setdefault(bundle.language, []).append(bundle)
        if not by_language:
            return {}

        def run_language(group: list[Bundle]) -> list[TestReport]:
            return [self.run(bundle, filter) for bundle in group]

        groups = list(by_language.values())
        with ThreadPoolExecutor(max_workers=len(groups), thread_name_prefix="bindery-test") as pool:
            per_group = list(pool.map(run_language, groups))
        return {
            bundle.name: report
            for group, reports in zip(groups, per_group, strict=True)
            for bundle, report in zip(group, reports, strict=True)
        }

    def _run_case(self, suite: SuiteConfig, bundle: Bundle, case: TestCaseSpec) -> TestCaseResult:
        if self.token.cancelled:
            return _result(case, TestStatus.SKIPPED, message="cancelled")

        values = {
            "test": case.name,
            "bundle": bundle.path,
            "language": bundle.language,
            "project_dir": self.config.project_dir,
        }
        command = render_command(suite.command, values)
        env = {BUNDLE_ENV_VAR: str(bundle.path), **render_env(suite.env, values)}
        cwd = suite.cwd if suite.cwd is None or suite.cwd.is_absolute() else self.config.project_dir / suite.cwd

        start = time.monotonic()
        try:
            result = run_command(
                command,
                cwd=cwd or self.config.project_dir,
                env=env,
                token=self.token,
                timeout_seconds=suite.timeout_seconds,
            )
        except FileNotFoundError:
            return _result(case, TestStatus.FAILED, message=f"test command '{command[0]}' not found")
        except PipelineCancelled:
            return _result(case, TestStatus.SKIPPED, message="cancelled")
        duration_ms = int((time.monotonic() - start) * 1000)

        if result.cancelled:
            return _result(case, TestStatus.SKIPPED, duration_ms=duration_ms, message="cancelled")
        if result.returncode == 0:
            return _result(case, TestStatus.PASSED, duration_ms=duration_ms)

        self._log.warning(
            "test_case_failed", language=bundle.language, test=case.name, returncode=result.returncode
        )
        return _result(
            case,
            TestStatus.FAILED,
            duration_ms=duration_ms,
            message=result.output[-MESSAGE_TAIL_CHARS:],
        )


def _result(
    case: TestCaseSpec, status: TestStatus, *, duration_ms: int = 0, message: str = ""
) -> TestCaseResult:
    return TestCaseResult(
        name=case.name,
        status=status,
        tags=list(case.tags),
        duration_ms=duration_ms,
        message=message,
    )


def _overall(results: list[TestCaseResult], *, cancelled: bool) -> TestStatus:
    if any(r.status == TestStatus.FAILED for r in results):
        return TestStatus.FAILED
    # A suite with no executed case cannot clear the publish gate
    if cancelled or not any(r.status == TestStatus.PASSED for r in results):
        return TestStatus.SKIPPED
    return TestStatus.PASSED
