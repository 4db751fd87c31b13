import logging
import os
import opentelemetry.trace
from azure.monitor.opentelemetry import configure_azure_monitor

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# The Cosmos and identity SDKs log every HTTP request at INFO
NOISY_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
)

# Application Insights export only when hosted in Azure Functions
if os.environ.get("FUNCTIONS_WORKER_RUNTIME"):
    try:
        configure_azure_monitor(logger_name="inventory_records")
        logging.info("Azure Monitor OpenTelemetry configured successfully")
    except Exception as e:
        logging.error(f"Error configuring Azure Monitor: {str(e)}")

tracer = opentelemetry.trace.get_tracer("inventory_records")

logger = logging.getLogger("inventory_records")
logger.setLevel(LOG_LEVEL)

if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )
    logger.addHandler(console_handler)

for noisy in NOISY_LOGGERS:
    logging.getLogger(noisy).setLevel(logging.WARNING)


def get_child_logger(name):
    """Child of the inventory_records logger, e.g. inventory_records.cache."""
    return logger.getChild(name)
