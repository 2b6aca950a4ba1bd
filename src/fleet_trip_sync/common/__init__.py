# fleet_trip_sync/common/__init__.py

from fleet_trip_sync.common.geo import haversine_meters, is_valid_coordinate
from fleet_trip_sync.common.logger import setup_logger
from fleet_trip_sync.common.partitioned_file_io import PartitionedParquetHandler
from fleet_trip_sync.common.truststore_context import (
    build_ssl_verify,
    build_truststore_ssl_context,
)

__all__: list[str] = [
    'PartitionedParquetHandler',
    'build_ssl_verify',
    'build_truststore_ssl_context',
    'haversine_meters',
    'is_valid_coordinate',
    'setup_logger',
]
