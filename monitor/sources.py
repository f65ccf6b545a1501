"""Metric source definitions loading and validation."""
import logging
from pathlib import Path

import yaml

from models.metrics import MetricMapping, MetricSource
from monitor.targets import write_keywords
from utils.errors import ConfigError

logger = logging.getLogger("dbwatch.sources")


class SourcesManager:
    def __init__(self, sources_path="config/sources.yaml", defaults=None, known_targets=None):
        self.sources_path = Path(sources_path)
        self.defaults = defaults or {}
        self.known_targets = set(known_targets) if known_targets is not None else None
        self.sources = []
        self.load()

    def load(self):
        if not self.sources_path.exists():
            logger.warning(f"Sources file not found: {self.sources_path}")
            return
        with open(self.sources_path) as f:
            data = yaml.safe_load(f) or {}
        self.sources = self.parse_sources(data.get("sources", []))
        logger.info(f"Loaded {len(self.sources)} metric sources")

    def parse_sources(self, raw_sources):
        sources = []
        seen = set()
        default_interval = float(self.defaults.get("default_interval", 60))
        default_timeout = float(self.defaults.get("default_timeout", 30))
        for raw in raw_sources:
            source_id = raw.get("id")
            if not source_id:
                raise ConfigError(f"Metric source without id: {raw}")
            if source_id in seen:
                raise ConfigError(f"Duplicate metric source id: {source_id}")
            seen.add(source_id)

            query = (raw.get("query") or "").strip()
            if not query:
                raise ConfigError(f"Source {source_id} has no query")
            blocked = write_keywords(query)
            if blocked:
                raise ConfigError(f"Source {source_id} query is not read-only ({', '.join(blocked)})")

            target = raw.get("target", "")
            if self.known_targets is not None and target not in self.known_targets:
                raise ConfigError(f"Source {source_id} references unknown target: {target!r}")

            interval = float(raw.get("interval", default_interval))
            timeout = float(raw.get("timeout", default_timeout))
            if interval <= 0 or timeout <= 0:
                raise ConfigError(f"Source {source_id}: interval and timeout must be > 0")

            metrics = tuple(self._parse_mapping(source_id, m) for m in raw.get("metrics", []))
            if not metrics:
                raise ConfigError(f"Source {source_id} maps no metrics")

            sources.append(MetricSource(
                id=source_id,
                target=target,
                query=query,
                interval=interval,
                timeout=timeout,
                tag_columns=tuple(raw.get("tags", []) or []),
                static_tags={str(k): str(v) for k, v in (raw.get("static_tags") or {}).items()},
                metrics=metrics,
                enabled=raw.get("enabled", True),
                description=raw.get("description", ""),
            ))
        return sources

    @staticmethod
    def _parse_mapping(source_id, raw):
        if raw.get("name_column"):
            if not raw.get("value_column"):
                raise ConfigError(f"Source {source_id}: pivot mapping needs value_column")
            return MetricMapping(
                name_column=raw["name_column"],
                value_column=raw["value_column"],
                prefix=raw.get("prefix", ""),
                unit=raw.get("unit", ""),
            )
        if not raw.get("column"):
            raise ConfigError(f"Source {source_id}: metric mapping needs column or name_column")
        return MetricMapping(
            column=raw["column"],
            name=raw.get("name", raw["column"]),
            unit=raw.get("unit", ""),
        )

    def get_enabled_sources(self):
        return [s for s in self.sources if s.enabled]

    def get_source(self, source_id):
        for s in self.sources:
            if s.id == source_id:
                return s
        return None

    def get_all_sources(self):
        return self.sources
