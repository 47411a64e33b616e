"""
Logging, request tracing and the error envelope.

Every response carries a ``success`` flag; failures add an ``error`` object with a stable code.
"""
from __future__ import annotations

import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from sales_ledger.config import settings
from sales_ledger.errors import LedgerError

CONSOLE_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss}</green> | '
    '<level>{level: <8}</level> | '
    '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | '
    '<blue>[{extra[request_id]}]</blue> - '
    '<level>{message}</level>'
)
FILE_FORMAT = '{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | [{extra[request_id]}] | {message}'

HTTP_ERROR_CODES = {
    400: 'BAD_REQUEST',
    401: 'UNAUTHORIZED',
    403: 'FORBIDDEN',
    404: 'NOT_FOUND',
    405: 'METHOD_NOT_ALLOWED',
    409: 'CONFLICT',
    422: 'UNPROCESSABLE_ENTITY',
    500: 'INTERNAL_SERVER_ERROR',
    501: 'NOT_IMPLEMENTED',
}


def _with_request_id(record) -> bool:
    record['extra'].setdefault('request_id', '-')
    return True


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.log_level, colorize=True, filter=_with_request_id)
    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        logger.add(
            str(log_dir / 'sales_ledger_{time:YYYY-MM-DD}.log'),
            format=FILE_FORMAT,
            level=settings.log_level,
            rotation='00:00',
            retention='30 days',
            compression='gz',
            filter=_with_request_id,
        )
        logger.add(
            str(log_dir / 'sales_ledger_error_{time:YYYY-MM-DD}.log'),
            format=FILE_FORMAT,
            level='ERROR',
            rotation='00:00',
            retention='60 days',
            compression='gz',
            filter=_with_request_id,
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        started = time.perf_counter()

        with logger.contextualize(request_id=request_id):
            logger.info(f'{request.method} {request.url.path} started')
            try:
                response = await call_next(request)
            except Exception as exc:
                elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
                logger.error(f'{request.method} {request.url.path} failed after {elapsed_ms}ms: {exc}')
                raise

            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info(f'{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms')
            if elapsed_ms > settings.slow_request_ms:
                logger.warning(f'Slow request {request.method} {request.url.path}: {elapsed_ms}ms')

        response.headers['X-Request-ID'] = request_id
        response.headers['X-Process-Time'] = f'{elapsed_ms}ms'
        return response


def error_response(
    request: Request,
    *,
    error_code: str,
    message: str,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            'success': False,
            'message': message,
            'error': {
                'code': error_code,
                'message': message,
                'details': details or {},
                'timestamp': datetime.now(tz=timezone.utc).isoformat(),
                'request_id': getattr(request.state, 'request_id', '-'),
                'path': request.url.path,
            },
        },
    )


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    with logger.contextualize(request_id=getattr(request.state, 'request_id', '-')):
        logger.warning(f'{exc.error_code}: {exc.message}')
    return error_response(
        request,
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        error_code=HTTP_ERROR_CODES.get(exc.status_code, 'HTTP_ERROR'),
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            'field': ' -> '.join(str(loc) for loc in error['loc']),
            'message': error['msg'],
            'type': error['type'],
        }
        for error in exc.errors()
    ]
    if len(errors) == 1:
        message = f"Invalid request: {errors[0]['field']} - {errors[0]['message']}"
    else:
        message = 'Invalid request parameters'
    return error_response(
        request,
        error_code='VALIDATION_ERROR',
        message=message,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={'validation_errors': errors},
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    with logger.contextualize(request_id=getattr(request.state, 'request_id', '-')):
        logger.warning(f'Integrity conflict: {exc.orig}')
    return error_response(
        request,
        error_code='CONCURRENCY_CONFLICT',
        message='The document changed concurrently, retry the request',
        status_code=status.HTTP_409_CONFLICT,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    with logger.contextualize(request_id=getattr(request.state, 'request_id', '-')):
        logger.error(f'Unhandled {type(exc).__name__}: {exc}\n{traceback.format_exc()}')
    return error_response(
        request,
        error_code='INTERNAL_SERVER_ERROR',
        message='Internal server error',
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


def install_error_handling(app: FastAPI) -> None:
    configure_logging()
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)
