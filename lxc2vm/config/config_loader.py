from __future__ import annotations
import argparse
import glob
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml
from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from ..core.exceptions import ConfigError
from ..core.utils import U

SECRET_ENV = "LXC2VM_CONFIG_SECRET"


class Config:
    @staticmethod
    def load_one(logger: logging.Logger, path: str) -> Dict[str, Any]:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config not found: {p}")
        Config.verify_signature(logger, p)
        try:
            if p.suffix.lower() == ".json":
                data = json.loads(p.read_text(encoding="utf-8"))
            else:
                data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config {p}: {e}")
        except ValueError as e:
            raise ConfigError(f"Invalid JSON in config {p}: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to load config {p}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config must be a mapping/dict: {p}")
        # normalize dash keys -> underscore keys
        out: Dict[str, Any] = {}
        for k, v in data.items():
            nk = str(k).replace("-", "_")
            out[nk] = v
            if nk != k:
                logger.debug(f"Normalized config key: {k} -> {nk}")
        logger.debug(f"Loaded config {p}:\n{U.json_dump(out)}")
        return out

    @staticmethod
    def verify_signature(logger: logging.Logger, config_path: Path) -> bool:
        """HMAC-SHA256 check against <config>.sig when LXC2VM_CONFIG_SECRET is set."""
        secret = os.environ.get(SECRET_ENV, "")
        if not secret:
            logger.debug(f"No config verification secret set ({SECRET_ENV})")
            return True
        sig_path = config_path.with_suffix(config_path.suffix + ".sig")
        if not sig_path.exists():
            logger.warning(f"No signature file found for config: {config_path}")
            return True
        expected_sig = hmac.new(secret.encode(), config_path.read_bytes(), hashlib.sha256).hexdigest()
        actual_sig = sig_path.read_text(encoding="utf-8").strip()
        if not hmac.compare_digest(expected_sig, actual_sig):
            raise ConfigError(f"Config signature verification failed for {config_path}")
        logger.debug(f"Config signature verified: {config_path}")
        return True

    @staticmethod
    def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep-ish merge:
        - dict + dict => recurse
        - list => override replaces (not concatenated)
        - scalar => override replaces
        """
        out = dict(base)
        for k, v in override.items():
            if k in out and isinstance(out[k], dict) and isinstance(v, dict):
                out[k] = Config.merge_dicts(out[k], v)
            else:
                out[k] = v
        return out

    @staticmethod
    def expand_configs(logger: logging.Logger, configs: List[str]) -> List[str]:
        expanded: List[str] = []
        for c in configs:
            p = Path(c).expanduser()
            if p.is_dir():
                for pattern in ("*.yaml", "*.yml", "*.json"):
                    expanded.extend(str(f) for f in sorted(p.glob(pattern)) if f.is_file())
            elif "*" in c or "?" in c:
                expanded.extend(sorted(glob.glob(c)))
            else:
                expanded.append(c)
        logger.debug(f"Expanded configs: {expanded}")
        return expanded

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[str]) -> Dict[str, Any]:
        conf: Dict[str, Any] = {}
        paths = Config.expand_configs(logger, paths)
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"), TimeElapsedColumn(), TimeRemainingColumn()) as progress:
            task = progress.add_task("Loading configs", total=len(paths))
            for p in paths:
                conf = Config.merge_dicts(conf, Config.load_one(logger, p))
                progress.update(task, advance=1)
        return conf

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        if not conf:
            return
        for act in parser._actions:
            dest = getattr(act, "dest", None)
            if not dest or dest not in conf:
                continue
            val = conf[dest]
            logger.debug(f"[Config] default {dest}: {act.default!r} -> {val!r}")
            act.default = val
            if getattr(act, "required", False) and val is not None:
                act.required = False

    @staticmethod
    def job_overrides(logger: logging.Logger, conf: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        `jobs:` entries, each merged over the shared top-level keys:

            storage: local-lvm
            jobs:
              - {ctid: 100, vmid: 200}
              - {ctid: 101, vmid: 201, disk_size: 16}
        """
        jobs = conf.get("jobs")
        if jobs is None:
            return []
        if not isinstance(jobs, list):
            raise ConfigError("'jobs' must be a list of {ctid, vmid, ...} mappings")
        base = {k: v for k, v in conf.items() if k != "jobs"}
        out = []
        for i, job in enumerate(jobs):
            if not isinstance(job, dict) or "ctid" not in job or "vmid" not in job:
                raise ConfigError(f"jobs[{i}] needs both ctid and vmid")
            merged = dict(base)
            merged.update({str(k).replace("-", "_"): v for k, v in job.items()})
            out.append(merged)
        logger.debug(f"Loaded {len(out)} job(s) from config")
        return out
