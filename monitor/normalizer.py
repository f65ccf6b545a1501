"""Convert raw result rows into typed metric samples."""
import logging
import math
import re
from decimal import Decimal

from models.metrics import Sample
from utils.counters import Counters

logger = logging.getLogger("dbwatch.normalizer")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def metric_slug(name):
    """'Batch Requests/sec' -> 'batch_requests_sec'."""
    return _SLUG_RE.sub("_", str(name).strip().lower()).strip("_")


def to_number(value):
    """Numeric value as float, or None when missing or not numeric."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def lower_keys(row):
    return {str(k).lower(): v for k, v in row.items()}


def required_columns(source):
    """Columns a result set must contain for ``source`` to normalize."""
    columns = [c.lower() for c in source.tag_columns]
    for mapping in source.metrics:
        columns.extend(c.lower() for c in mapping.columns)
    return list(dict.fromkeys(columns))


class MetricNormalizer:
    """Maps rows to samples using each source's column mapping.

    Same rows and mapping always give the same samples. Rows whose value is
    NULL or not numeric yield no sample for that mapping and are counted under
    ``samples_dropped``.
    """

    def __init__(self, counters=None):
        self.counters = counters or Counters()

    def normalize(self, source, rows, collected_at):
        samples = []
        dropped = 0
        base_tags = {}
        if source.target:
            base_tags["target"] = source.target
        base_tags.update(source.static_tags)

        for raw in rows:
            row = lower_keys(raw)
            tags = dict(base_tags)
            for column in source.tag_columns:
                value = row.get(column.lower())
                tags[column] = "" if value is None else str(value).strip()

            for mapping in source.metrics:
                if mapping.is_pivot:
                    raw_name = row.get(mapping.name_column.lower())
                    if raw_name is None or not str(raw_name).strip():
                        dropped += 1
                        continue
                    name = metric_slug(raw_name)
                    if mapping.prefix:
                        name = f"{mapping.prefix}.{name}"
                    value = to_number(row.get(mapping.value_column.lower()))
                else:
                    name = mapping.name
                    value = to_number(row.get(mapping.column.lower()))

                if value is None:
                    dropped += 1
                    continue
                samples.append(Sample(
                    source_id=source.id,
                    metric_name=name,
                    value=value,
                    collected_at=collected_at,
                    tags=dict(tags),
                    unit=mapping.unit,
                ))

        if dropped:
            self.counters.incr("samples_dropped", dropped, label=source.id)
            logger.debug(f"{source.id}: dropped {dropped} unmappable values")
        return samples
