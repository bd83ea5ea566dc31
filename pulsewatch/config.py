"""Configuration settings for the BPM ingestion and failover engine."""

import os
from typing import Dict

# Logging
LOG_LEVEL = os.getenv("PULSEWATCH_LOG_LEVEL", "INFO")

# Registered devices, one per data source
PRIMARY_DEVICE_ID = os.getenv("PULSEWATCH_PRIMARY_DEVICE_ID", "ARDUINO_UNO_001")
SECONDARY_DEVICE_ID = os.getenv("PULSEWATCH_SECONDARY_DEVICE_ID", "THINGSPEAK_BACKUP")
DEVICE_NAMES: Dict[str, str] = {
    PRIMARY_DEVICE_ID: "Primary Arduino Sensor",
    SECONDARY_DEVICE_ID: "ThingSpeak Backup",
}

# The relay forwards samples of the primary sensor, so relayed readings are
# attributed to it.
RELAYED_DEVICE_ID = os.getenv("PULSEWATCH_RELAYED_DEVICE_ID", PRIMARY_DEVICE_ID)

# Physical bounds accepted by the normalizer (inclusive)
MIN_PHYSICAL_BPM = 0
MAX_PHYSICAL_BPM = 300

# Confidence defaults per source
PRIMARY_CONFIDENCE = 0.95
SECONDARY_CONFIDENCE = 0.80
SMOOTHING_CONFIDENCE_PENALTY = 0.15

# Quality thresholds (bpm)
CRITICAL_LOW_BPM = int(os.getenv("PULSEWATCH_CRITICAL_LOW_BPM", "50"))
CRITICAL_HIGH_BPM = int(os.getenv("PULSEWATCH_CRITICAL_HIGH_BPM", "120"))
WARNING_LOW_BPM = int(os.getenv("PULSEWATCH_WARNING_LOW_BPM", "60"))
WARNING_HIGH_BPM = int(os.getenv("PULSEWATCH_WARNING_HIGH_BPM", "100"))

# Anomaly detection
ANOMALY_RATE_OF_CHANGE = 20.0
ANOMALY_WINDOW_SECONDS = 10
ANOMALY_MIN_CONFIDENCE = 0.5
PROCESSING_SMOOTHING = 0.7  # EMA weight of the newest sample

# Source liveness windows
PRIMARY_TIMEOUT_SECONDS = int(os.getenv("PULSEWATCH_PRIMARY_TIMEOUT", "60"))
SECONDARY_TIMEOUT_SECONDS = int(os.getenv("PULSEWATCH_SECONDARY_TIMEOUT", "120"))

# Fresh primary heartbeats needed to fail back to primary (1 = no hysteresis)
PRIMARY_RESTORE_HEARTBEATS = int(os.getenv("PULSEWATCH_PRIMARY_RESTORE_HEARTBEATS", "1"))

# Expected heartbeat cadence, used by the health scorer
PRIMARY_HEARTBEAT_INTERVAL_SECONDS = 10
SECONDARY_HEARTBEAT_INTERVAL_SECONDS = 30

# Alerting
ALERT_DEDUP_WINDOW_SECONDS = 300
ALERT_RESOLVE_AFTER_NORMAL = 3
SYSTEM_DEVICE_ID = "system"

# Aggregation and health scoring
READING_WINDOW_SIZE = 50
TREND_GROUP_SIZE = 5
HEALTH_SAMPLE_WINDOW = 12
HEALTH_SMOOTHING = 0.3
HEALTH_WEIGHTS: Dict[str, float] = {
    "schedule": 0.4,
    "quality": 0.3,
    "recency": 0.3,
}
HEALTHY_SCORE = 0.8
DEGRADED_SCORE = 0.4

# Periodic monitor (heartbeat timeout detection)
MONITOR_INTERVAL_SECONDS = float(os.getenv("PULSEWATCH_MONITOR_INTERVAL", "5"))

# Live stream
OBSERVER_QUEUE_SIZE = 100
STREAM_RETRY_MILLISECONDS = 5000
STREAM_KEEPALIVE_SECONDS = 15.0

# ThingSpeak relay polling (disabled unless a channel is configured)
THINGSPEAK_BASE_URL = os.getenv("THINGSPEAK_BASE_URL", "https://api.thingspeak.com")
THINGSPEAK_CHANNEL_ID = os.getenv("THINGSPEAK_CHANNEL_ID", "")
THINGSPEAK_READ_API_KEY = os.getenv("THINGSPEAK_READ_API_KEY", "")
THINGSPEAK_POLL_SECONDS = float(os.getenv("THINGSPEAK_POLL_SECONDS", "15"))

# Data storage configuration
DATA_DIR = os.getenv("PULSEWATCH_DATA_DIR", "data")
PARQUET_FILE_PREFIX = "bpm_readings"

# Batch write configuration (for performance)
BATCH_SIZE = 100  # Number of records to buffer before writing
FLUSH_INTERVAL_SECONDS = 5  # Flush buffer every N seconds
MAX_BUFFERED_RECORDS = 10_000  # In-memory retention while storage is down
