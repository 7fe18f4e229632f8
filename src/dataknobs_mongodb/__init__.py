"""DataKnobs MongoDB Package - MongoDB connectors for load-testing pipelines.

The `dataknobs-mongodb` package reads documents from and writes documents to
MongoDB from inside a load-testing scenario. It offers three steps:

Modules:
    poll: Background polling of a collection, fetching only the new documents
        by means of a tie-breaker field
    search: One query per received input
    save: Bulk inserts tolerating the rejection of part of a batch
    converters: Conversion of documents into records with increasing offsets
    subscription: Push-based driver streams reduced to awaited values
    config: Configuration dataclasses and YAML/JSON loading
    events: Structured events of the steps
    meters: Prometheus meters of the steps
    exceptions: Custom exceptions for error handling

Quick Examples:

    Poll new documents every second:

    ```python
    from dataknobs_mongodb import PollConfig, QueueOutput, StepStartStopContext, build_poll_step

    config = PollConfig.from_dict({
        "name": "poll-moves",
        "search": {
            "database": "the-db",
            "collection": "moves",
            "query": {"action": "IN"},
            "sort": {"timestamp": "ASC"},
            "tie_breaker": "timestamp",
        },
        "poll_delay": 1.0,
        "flatten": True,
    })
    step = build_poll_step(config)
    context = StepStartStopContext(scenario="building", step="poll-moves")

    output = QueueOutput()
    await step.start(context)
    runner = asyncio.create_task(step.run(output))
    record = await output.receive()
    await step.stop(context)
    ```

    Save documents and check the partial failures:

    ```python
    from dataknobs_mongodb import MongoDbSaveQueryClient, MongoConnectionConfig

    client = MongoDbSaveQueryClient(MongoConnectionConfig().client_factory())
    await client.start(context)
    outcome = await client.execute("the-db", "moves", documents)
    if outcome.failed_records:
        ...
    await client.stop(context)
    ```
"""

from .config import MonitoringConfig, PollConfig, SaveConfig, SearchConfig, load_config
from .connection import MongoConnectionConfig, create_mongodb_client
from .context import StepStartStopContext
from .converters import (
    PollBatchConverter,
    PollSingleConverter,
    SearchBatchConverter,
    SearchSingleConverter,
    build_poll_converter,
)
from .events import Event, EventLevel, EventsLogger, InMemoryEventsLogger, LoggingEventsLogger
from .exceptions import (
    ConcurrencyError,
    ConfigurationError,
    DatabaseConnectionError,
    DataknobsMongoError,
    OperationError,
    QueryError,
    ReaderClosedError,
    ReaderStateError,
    ResourceError,
    SaveError,
)
from .meters import MeterRegistry
from .output import QueueOutput, StepOutput
from .poll import (
    IterativeDatasourceStep,
    MongoDbIterativeReader,
    MongoDbPollStatement,
    PollStatement,
    build_poll_step,
)
from .records import (
    MongoDbRecord,
    OffsetCounter,
    PollResults,
    QueryMeters,
    QueryResult,
    SaveOutcome,
    SaveResult,
    SearchResult,
    SearchResults,
    Sorting,
)
from .save import MongoDbSaveQueryClient, MongoDbSaveStep, build_save_client
from .search import MongoDbQueryClient, MongoDbSearchStep, SearchOutput

__version__ = "0.1.0"

__all__ = [
    # Steps
    "IterativeDatasourceStep",
    "MongoDbSearchStep",
    "MongoDbSaveStep",
    "SearchOutput",
    "build_poll_step",
    "build_save_client",
    # Core classes
    "MongoDbIterativeReader",
    "MongoDbPollStatement",
    "PollStatement",
    "MongoDbQueryClient",
    "MongoDbSaveQueryClient",
    # Records
    "MongoDbRecord",
    "OffsetCounter",
    "PollResults",
    "QueryMeters",
    "QueryResult",
    "SaveOutcome",
    "SaveResult",
    "SearchResult",
    "SearchResults",
    "Sorting",
    # Converters
    "PollBatchConverter",
    "PollSingleConverter",
    "SearchBatchConverter",
    "SearchSingleConverter",
    "build_poll_converter",
    # Configuration
    "MongoConnectionConfig",
    "MonitoringConfig",
    "PollConfig",
    "SaveConfig",
    "SearchConfig",
    "StepStartStopContext",
    "create_mongodb_client",
    "load_config",
    # Telemetry
    "Event",
    "EventLevel",
    "EventsLogger",
    "InMemoryEventsLogger",
    "LoggingEventsLogger",
    "MeterRegistry",
    # Outputs
    "QueueOutput",
    "StepOutput",
    # Exceptions
    "DataknobsMongoError",
    "ConfigurationError",
    "ResourceError",
    "DatabaseConnectionError",
    "OperationError",
    "QueryError",
    "SaveError",
    "ConcurrencyError",
    "ReaderStateError",
    "ReaderClosedError",
]
