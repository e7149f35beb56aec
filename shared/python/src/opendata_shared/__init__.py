"""
opendata_shared — shared configuration, models, errors and value helpers.

Usage:
    from opendata_shared.config import settings
    from opendata_shared.errors import FormatError, InputError
    from opendata_shared.models import MaterializedTable, AggregationRequest
    from opendata_shared.values import parse_number, stringify
"""

__version__ = "0.1.0"
