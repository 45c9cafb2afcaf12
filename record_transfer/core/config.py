from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"
    date_default_dayfirst: bool = False

    # Local staging store (SQLite via SQLAlchemy)
    staging_db_url: str = "sqlite:///./record_transfer_staging.db"

    # Import pipeline
    import_page_size: int = 500          # Rows per page during import runs
    prepare_page_size: int = 250         # Rows per page during prepare/validate runs
    source_page_size: int = 100          # Default page size for PagedSource.read_all
    worker_step_size: int = 500          # Rows per micro-batch handed over by the parse worker
    large_file_size_mb: int = 5          # Files above this size should go through the staging store
    batch_size: int = 50                 # Packages per sub-batch ("ExecuteMultiple")
    batch_parallel: int = 4              # Sub-batches in flight at once
    batch_max_size: int = 1000
    batch_max_parallel: int = 6
    operation_queue_context: str = "record_transfer.DataImport"
    resolve_cache_scope: str = "process"  # Options: "process" (shared), "run" (fresh per import)
    row_error_sample_limit: int = 100

    # Remote record store (OData Web API)
    webapi_url: str = ""                 # e.g. https://org.crm.dynamics.com/api/data/v9.2
    webapi_token: str = ""
    webapi_timeout_seconds: int = 30
    webapi_max_retries: int = 3
    metadata_file: str = ""              # JSON metadata document; used instead of the Web API when set

    # Google Sheets export target
    sheets_api_url: str = "https://sheets.googleapis.com/v4/spreadsheets"
    sheets_api_token: str = ""

    # Export settings
    export_page_size: int = 500
    export_delimiter: str = ";"
    export_json_indent: int = 2
    export_zip_result: bool = True
    export_output_dir: str = "./exports"

    # Configuration data backup
    backup_schemas_path: str = "./backup_schemas.json"

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
