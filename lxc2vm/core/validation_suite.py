from __future__ import annotations
import logging
from typing import Any, Callable, Dict, List

from .utils import U


class CheckFailed(Exception):
    pass


class ValidationSuite:
    """
    Ordered named checks. Every check runs; a failing one never stops the
    rest. A check fails by raising or by returning False; any other return
    value is kept as its detail.
    """
    def __init__(self, logger: logging.Logger, title: str = "Running validations"):
        self.logger = logger
        self.title = title
        self.checks: List[Dict[str, Any]] = []
    def add_check(self, name: str, check_func: Callable[[Dict[str, Any]], Any], critical: bool = False):
        self.checks.append({
            "name": name,
            "func": check_func,
            "critical": critical
        })
    def run_all(self, context: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        with U.progress() as progress:
            task = progress.add_task(self.title, total=len(self.checks))
            for check in self.checks:
                try:
                    result = check["func"](context)
                    if result is False:
                        raise CheckFailed("")
                    results[check["name"]] = {
                        "passed": True,
                        "detail": "" if result in (None, True) else str(result),
                        "critical": check["critical"]
                    }
                    self.logger.info(f"CHECK: {check['name']} ✓" + (f" ({result})" if result not in (None, True) else ""))
                except Exception as e:
                    results[check["name"]] = {
                        "passed": False,
                        "detail": str(e),
                        "critical": check["critical"]
                    }
                    msg = f"CHECK: {check['name']} ✗" + (f" ({e})" if str(e) else "")
                    if check["critical"]:
                        self.logger.error(msg)
                    else:
                        self.logger.warning(msg)
                progress.update(task, advance=1)
        return results
