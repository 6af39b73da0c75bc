"""
Logging configuration for supplement extraction.

Every pipeline event goes through a StageLogger so that records carry
`event`, `stage` and `correlation_id` attributes.
"""

import logging
import sys
import uuid

# Create logger
logger = logging.getLogger('supplement_extract')
logger.setLevel(logging.DEBUG)


class _ContextDefaults(logging.Filter):
    """Fill in context attributes for records logged outside a StageLogger."""

    def filter(self, record):
        for attr in ('stage', 'correlation_id', 'event'):
            if not hasattr(record, attr):
                setattr(record, attr, '-')
        return True


# Console handler with formatting
console = logging.StreamHandler(sys.stdout)
console.setLevel(logging.INFO)
console.addFilter(_ContextDefaults())

formatter = logging.Formatter(
    '%(asctime)s | %(levelname)-5s | %(name)s | %(correlation_id)s | %(stage)s | %(message)s',
    datefmt='%H:%M:%S'
)
console.setFormatter(formatter)

if not logger.handlers:
    logger.addHandler(console)


class StageLogger(logging.LoggerAdapter):
    """Logger adapter bound to one pipeline stage and one extraction request."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs

    def event(self, name, /, level=logging.INFO, **fields):
        """Log a structured event. Fields are attached to the record as `fields`."""
        details = ' '.join(f"{k}={v}" for k, v in fields.items())
        message = f"{name} {details}".strip()
        self.log(level, message, extra={'event': name, 'fields': fields})

    def bind(self, stage):
        """Same correlation id, different stage."""
        return get_stage_logger(stage, self.extra.get('correlation_id'))


def new_correlation_id():
    return uuid.uuid4().hex[:12]


def get_stage_logger(stage, correlation_id=None):
    """Get a child logger for a pipeline stage, tagged with a correlation id."""
    return StageLogger(
        logger.getChild(stage),
        {'stage': stage, 'correlation_id': correlation_id or '-'}
    )
