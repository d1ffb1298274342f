"""
Domain Constants

Centrally manages constants shared across the evaluation harness.
"""

# Prefix marking a harness/transport failure in a logged result
SYSTEM_ERROR = "$SystemError$"

# Phrase returned by the recognition gateway when the service is saturated
SATURATION_MARKER = "return 0B."

# Logical column names every dataset must declare
IMAGE_KEY = "imagekey"
IMAGE_DATA = "imagedata"
LABEL = "label"
FLAG = "flag"
REQUIRED_COLUMNS = [IMAGE_KEY, IMAGE_DATA]

# Global retry defaults (config file)
DEFAULT_MAX_RETRY = 10
DEFAULT_MAX_WAIT_MINS = 60

# Dispatch defaults (environment)
DEFAULT_LOCAL_RETRIES = 3
DEFAULT_FLUSH_INTERVAL = 100
DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS = 600
DEFAULT_MAX_CONCURRENCY = 20

# Timestamp formats (UTC)
LOG_NAME_TIME_FORMAT = "%Y%m%d_%H%M%S"
LOG_LINE_TIME_FORMAT = "%Y%m%d_%H%M%S.%f"

# Precision targets reported by the accuracy calculator
PRECISION_TARGETS = [0.95, 0.99]

# Flag bits in the dataset's flag column
FLAG_SETS = {
    "hard": 0x1,
    "random": 0x2,
}
