"""Project-wide constants (service names, chunk sizes, timeouts)."""

# Schema namespace: model messages are "xos.<Model>", model CRUD lives on "xos.xos"
MODEL_PACKAGE: str = "xos"
MODEL_SERVICE: str = "xos.xos"
FILETRANSFER_SERVICE: str = "xos.filetransfer"
UTILITY_SERVICE: str = "xos.utility"
DYNAMICLOAD_SERVICE: str = "xos.dynamicload"

ID_MESSAGE: str = "xos.ID"
QUERY_MESSAGE: str = "xos.Query"

# Reserved field name whose value is a raw JSON payload merged into a message
RAW_JSON_FIELD: str = "_json"

DEFAULT_SERVER: str = "localhost:50051"
DEFAULT_GRPC_TIMEOUT_SECONDS: float = 10.0
DEFAULT_CHUNK_SIZE_BYTES: int = 64 * 1024  # 64 KiB, one message per chunk

POLL_INTERVAL_SECONDS: float = 0.1

GRPC_KEEPALIVE_TIME_MS: int = 30000
GRPC_KEEPALIVE_TIMEOUT_MS: int = 10000

CHECKSUM_ALGORITHM: str = "sha256"

CORE_VERSION_CONSTRAINT: str = ">= 3, < 5"  # core major versions 3 and 4
CORE_COMPONENT_NAME: str = "xos-core"
DATABASE_COMPONENT_NAME: str = "Database"

BACKUP_LOCAL_DIR_URI: str = "file:///var/run/xos/backup/local/"
BACKUP_NAME_PREFIX: str = "modelctl"

GRPC_APPLICATION_EXCEPTION_PREFIX: str = "Exception calling application: "
