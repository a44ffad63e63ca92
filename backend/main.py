"""
main.py - DB Console API
Connection testing, table browsing, ad-hoc SQL, export/rename/drop for MySQL and PostgreSQL.

Every route is stateless: the connection details travel in the request
body, a connector is opened for the duration of the call and closed
before the response is sent.
"""
from typing import Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from app_config import get_settings
from app_logging import get_logger, setup_logging
from db_connectors import (
    ConnectionConfig, DBType, as_dicts, fetch_databases_with_tables, get_connector,
)
from db_errors import DatabaseConnectionError, classify_error
from export_generator import ExportFormat, generate_export

settings = get_settings()
setup_logging(settings.log_level)

app = FastAPI(title="DB Console API", version="1.0.0")
app.add_middleware(CORSMiddleware, allow_origins=settings.cors_origins, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

CONNECTION_FIELDS = ("networkType", "hostname", "username", "port")


class ConnectionRequest(BaseModel):
    networkType: Optional[str] = None
    hostname: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    port: Optional[Union[int, str]] = None

class TablesRequest(ConnectionRequest):
    database: Optional[str] = None
    search: Optional[str] = None

class ColumnsRequest(ConnectionRequest):
    database: Optional[str] = None
    tableName: Optional[str] = None

class QueryRequest(ConnectionRequest):
    database: Optional[str] = None
    query: Optional[str] = None

class ExportRequest(ConnectionRequest):
    database: Optional[str] = None
    tableName: Optional[str] = None
    format: Optional[str] = None

class RenameRequest(ConnectionRequest):
    database: Optional[str] = None
    oldTableName: Optional[str] = None
    newTableName: Optional[str] = None

class DeleteRequest(ConnectionRequest):
    database: Optional[str] = None
    tableName: Optional[str] = None


class RequestError(Exception):
    """Client input problem, answered with 400 before any connection is opened."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@app.exception_handler(RequestError)
async def _request_error(request: Request, exc: RequestError):
    return JSONResponse(status_code=400, content={"error": exc.message})

@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


def _require(req: BaseModel, *fields: str, message: str) -> None:
    if any(getattr(req, f) in (None, "") for f in fields):
        raise RequestError(message)

def _parse_port(raw: Union[int, str, None]) -> Optional[int]:
    if raw in (None, ""):
        return None
    try:
        port = int(str(raw).strip())
    except ValueError:
        raise RequestError("Port must be an integer") from None
    if not 0 < port < 65536:
        raise RequestError("Port must be between 1 and 65535")
    return port

def _build_config(req: ConnectionRequest) -> ConnectionConfig:
    """Validated ConnectionConfig; an absent port falls back to the engine default."""
    try:
        db_type = DBType(req.networkType)
    except ValueError:
        raise RequestError("Unsupported database type") from None
    port = _parse_port(req.port)
    if port is None:
        port = settings.mysql_default_port if db_type is DBType.MYSQL else settings.postgres_default_port
    return ConnectionConfig(
        db_type=db_type, hostname=req.hostname, username=req.username,
        password=req.password or "", port=port, connect_timeout=settings.connect_timeout,
    )

def _failure(exc: Exception, config: ConnectionConfig, raw_errors: bool = False) -> JSONResponse:
    """
    500 body for a downstream failure.  Connection failures are always
    classified; with raw_errors, statement errors keep the driver message.
    """
    if raw_errors and not isinstance(exc, DatabaseConnectionError):
        get_logger("main").error("statement failed", host=config.hostname, error=str(exc))
        body = {"success": False, "error": str(exc) or "Failed to execute query", "details": str(exc)}
    else:
        body = classify_error(exc, config.hostname).to_dict()
    return JSONResponse(status_code=500, content=body)


@app.get("/")
def root(): return {"message": "DB Console API", "status": "running"}

@app.get("/health")
def health(): return {"status": "healthy"}


@app.post("/test-connection")
def test_connection(req: ConnectionRequest):
    _require(req, *CONNECTION_FIELDS, message="Network type, hostname, username, and port are required")
    config = _build_config(req)
    get_logger("main").info("testing connection", engine=config.db_type.value, host=config.hostname)
    try:
        databases = fetch_databases_with_tables(config, max_workers=settings.fanout_workers)
    except Exception as e:
        return _failure(e, config)
    return {"success": True, "databases": as_dicts(databases), "message": "Connection successful"}


@app.post("/get-tables")
def get_tables(req: TablesRequest):
    _require(req, *CONNECTION_FIELDS, "database",
             message="All connection details and database name are required")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            tables = conn.get_table_info(req.search)
    except Exception as e:
        return _failure(e, config)
    return {"success": True, "tables": as_dicts(tables)}


@app.post("/get-columns")
def get_columns(req: ColumnsRequest):
    _require(req, "networkType", "hostname", "username", "database", "tableName",
             message="Missing required fields")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            columns = conn.get_columns(req.tableName)
    except Exception as e:
        return _failure(e, config, raw_errors=True)
    return {"success": True, "columns": as_dicts(columns)}


@app.post("/execute-query")
def execute_query(req: QueryRequest):
    """Run one statement verbatim. Powers the SQL playground."""
    _require(req, "networkType", "hostname", "username", "database", "query",
             message="Missing required fields")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            result = conn.run_query(req.query)
        payload = jsonable_encoder(result.to_dict())
    except Exception as e:
        return _failure(e, config, raw_errors=True)
    return {"success": True, "result": payload}


@app.post("/export-table")
def export_table(req: ExportRequest):
    _require(req, *CONNECTION_FIELDS, "database", "tableName", "format", message="All fields are required")
    if req.format not in {f.value for f in ExportFormat}:
        raise RequestError("Invalid export format")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            columns, rows = conn.fetch_table(req.tableName)
        export = generate_export(req.tableName, columns, rows, req.format)
    except Exception as e:
        return _failure(e, config)
    get_logger("main").info("exported table", table=req.tableName, format=req.format, rows=len(rows))
    return Response(content=export.content, media_type=export.media_type,
                    headers={"Content-Disposition": export.content_disposition})


@app.post("/rename-table")
def rename_table(req: RenameRequest):
    _require(req, *CONNECTION_FIELDS, "database", "oldTableName", "newTableName",
             message="All fields are required")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            conn.rename_table(req.oldTableName, req.newTableName)
    except Exception as e:
        return _failure(e, config)
    return {"success": True, "message": f'Table renamed from "{req.oldTableName}" to "{req.newTableName}"'}


@app.post("/delete-table")
def delete_table(req: DeleteRequest):
    _require(req, *CONNECTION_FIELDS, "database", "tableName", message="All fields are required")
    config = _build_config(req)
    try:
        with get_connector(config, database=req.database) as conn:
            conn.drop_table(req.tableName)
    except Exception as e:
        return _failure(e, config)
    return {"success": True, "message": f'Table "{req.tableName}" deleted successfully'}


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=True)
