"""
backend.py

FastAPI backend exposing the crypter over HTTP.

Endpoints:
- /encrypt and /decrypt accept multipart uploads (one or many files) and a
  password; results are binary envelopes, returned as a single file or a ZIP
  archive. Uploads are written to a temp directory that is removed after the
  response via BackgroundTasks.
- /image/encrypt returns the envelope of an uploaded image as a .txt file;
  /image/decrypt takes that text back and returns the validated image.
- /text/encrypt and /text/decrypt work on short messages.

Security notes (read before deploying):
- Always run behind HTTPS to protect passwords in transit.
- Set upload size and request rate limits at the reverse proxy.

Usage:
  uvicorn fezlacrypt.backend:app --host 0.0.0.0 --port 8000

Example curl:
  curl -F "password=secret" -F "file=@photo.jpg" http://localhost:8000/image/encrypt -o data.txt
"""

import logging
import os
import shutil
import tempfile
import time
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from cryptography.hazmat.primitives import hashes

from .cache import ResultCache
from .config import DEFAULT_CHUNK_SIZE, DEFAULT_SCHEME, CrypterConfig
from .crypter import CrypterSession
from .errors import CrypterError, ErrorCategory, InvalidInput, describe
from .files import run_files
from .sources import BufferSource

logger = logging.getLogger(__name__)

UPLOAD_READ_SIZE = 1024 * 1024

_STATUS = {
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.DECRYPTION_FAILED: 400,
    ErrorCategory.CANCELLED: 400,
    ErrorCategory.IN_PROGRESS: 409,
    ErrorCategory.SOURCE_TOO_LARGE: 413,
    ErrorCategory.NOT_AN_IMAGE: 422,
    ErrorCategory.IO: 500,
    ErrorCategory.TIMEOUT: 504,
}


def http_error(e: Exception) -> HTTPException:
    category = getattr(e, 'category', None)
    return HTTPException(status_code=_STATUS.get(category, 500), detail=describe(e))


async def save_upload_to_tmp(upload: UploadFile, dest_dir: str) -> str:
    dest_path = os.path.join(dest_dir, os.path.basename(upload.filename or 'upload'))
    with open(dest_path, 'wb') as out_f:
        while True:
            chunk = await upload.read(UPLOAD_READ_SIZE)
            if not chunk:
                break
            out_f.write(chunk)
    return dest_path


async def read_upload(upload: UploadFile, limit: int) -> bytes:
    parts, size = [], 0
    while True:
        chunk = await upload.read(UPLOAD_READ_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise HTTPException(status_code=413, detail=describe_limit(limit))
        parts.append(chunk)
    return b''.join(parts)


def upload_identity(data: bytes) -> str:
    """Content-addressed identity so identical uploads share cache entries."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return 'upload:' + digest.finalize().hex()


def describe_limit(limit: int) -> str:
    return f'The file is too large. The limit is {limit // (1024 * 1024)} MB.'


def cleanup_dir(path):
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning('Could not remove %s: %s', path, e)


def create_app(config: CrypterConfig = None) -> FastAPI:
    config = config or CrypterConfig()
    app = FastAPI(title='Fezla Crypter Backend')
    app.state.config = config
    # one cache for the process, one session per request
    app.state.cache = ResultCache(config.cache_capacity, ttl=config.raw_cache_ttl,
                                  sweep_threshold=config.cache_sweep_threshold)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],  # restrict in production
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    def session_for(request: Request, **overrides) -> CrypterSession:
        try:
            cfg = request.app.state.config.with_overrides(**overrides)
        except CrypterError as e:
            raise http_error(e) from None
        return CrypterSession(cfg, cache=request.app.state.cache)

    async def run_session(call, *args, **kwargs):
        try:
            return await run_in_threadpool(call, *args, **kwargs)
        except CrypterError as e:
            logger.info('Request failed: %s', e)
            raise http_error(e) from None

    async def run_file_batch(mode: str, files: List[UploadFile], password: str, background_tasks: BackgroundTasks,
                             **options):
        if not files:
            raise HTTPException(status_code=400, detail='No files uploaded')
        if not password:
            raise http_error(InvalidInput())

        tmpdir = tempfile.mkdtemp(prefix='fzc_upload_')
        outdir = tempfile.mkdtemp(prefix='fzc_out_')
        try:
            saved_paths = [await save_upload_to_tmp(f, tmpdir) for f in files]
            succeeded, failed = await run_in_threadpool(run_files, mode, saved_paths, password, outdir, **options)
        except Exception:
            cleanup_dir(tmpdir)
            cleanup_dir(outdir)
            raise
        if failed:
            # no response will carry the background tasks, clean up now
            cleanup_dir(tmpdir)
            cleanup_dir(outdir)
            infile, e = failed[0]
            logger.error('%s failed for %s: %s', mode, os.path.basename(infile), e)
            raise http_error(e)

        # remove temp dirs once the response has been sent
        background_tasks.add_task(cleanup_dir, tmpdir)
        background_tasks.add_task(cleanup_dir, outdir)

        outputs = [outfile for _, outfile in succeeded]
        if len(outputs) == 1:
            return FileResponse(outputs[0], media_type='application/octet-stream',
                                filename=os.path.basename(outputs[0]))
        zip_base = os.path.join(tmpdir, 'fzc_results')
        zip_path = shutil.make_archive(zip_base, 'zip', outdir)
        return FileResponse(zip_path, media_type='application/zip', filename='fzc_results.zip')

    @app.post('/encrypt')
    async def encrypt_endpoint(
        background_tasks: BackgroundTasks,
        password: str = Form(...),
        files: List[UploadFile] = File(...),
        chunk_size: int = Form(DEFAULT_CHUNK_SIZE),
        file_workers: int = Form(2),
        chunk_workers: int = Form(1),
        scheme: str = Form(DEFAULT_SCHEME),
    ):
        return await run_file_batch('encrypt', files, password, background_tasks, chunk_size=chunk_size,
                                    file_workers=file_workers, chunk_workers=chunk_workers, scheme=scheme)

    @app.post('/decrypt')
    async def decrypt_endpoint(
        background_tasks: BackgroundTasks,
        password: str = Form(...),
        files: List[UploadFile] = File(...),
        file_workers: int = Form(2),
        chunk_workers: int = Form(1),
        scheme: Optional[str] = Form(None),
    ):
        return await run_file_batch('decrypt', files, password, background_tasks,
                                    file_workers=file_workers, chunk_workers=chunk_workers, scheme=scheme)

    @app.post('/image/encrypt')
    async def encrypt_image_endpoint(
        request: Request,
        password: str = Form(...),
        file: UploadFile = File(...),
        scheme: Optional[str] = Form(None),
        chunk_size: Optional[int] = Form(None),
        concurrency: Optional[int] = Form(None),
    ):
        session = session_for(request, scheme=scheme, chunk_size=chunk_size, concurrency=concurrency)
        data = await read_upload(file, session.config.max_text_source_bytes)
        text = await run_session(session.encrypt_image, BufferSource(data, upload_identity(data)), password)
        filename = f'data_{time.time_ns() // 1_000_000}.txt'
        return PlainTextResponse(text, headers={'Content-Disposition': f'attachment; filename="{filename}"'})

    @app.post('/image/decrypt')
    async def decrypt_image_endpoint(
        request: Request,
        password: str = Form(...),
        file: Optional[UploadFile] = File(None),
        text: Optional[str] = Form(None),
        scheme: Optional[str] = Form(None),
    ):
        session = session_for(request)
        # base64 text of a source at the ceiling, with room for the envelope framing
        limit = 2 * session.config.max_text_source_bytes
        if file is not None:
            raw = await read_upload(file, limit)
            try:
                text = raw.decode('utf-8')
            except UnicodeDecodeError:
                raise HTTPException(status_code=400, detail='The selected file is empty or invalid.') from None
        elif text is not None and len(text) > limit:
            raise HTTPException(status_code=413, detail=describe_limit(limit))
        image = await run_session(session.decrypt_image, text, password, scheme=scheme)
        return Response(
            content=image.data,
            media_type=image.mime,
            headers={'Content-Disposition': f'attachment; filename="{image.suggested_filename()}"'},
        )

    @app.post('/text/encrypt')
    async def encrypt_text_endpoint(
        request: Request,
        message: str = Form(...),
        password: str = Form(...),
        scheme: Optional[str] = Form(None),
        compact: bool = Form(False),
    ):
        session = session_for(request, scheme=scheme)
        result = await run_session(session.encrypt_text, message, password, compact=compact)
        return {'result': result}

    @app.post('/text/decrypt')
    async def decrypt_text_endpoint(
        request: Request,
        message: str = Form(...),
        password: str = Form(...),
        scheme: Optional[str] = Form(None),
    ):
        session = session_for(request)
        result = await run_session(session.decrypt_text, message, password, scheme=scheme)
        return {'result': result}

    @app.post('/cache/clear')
    async def clear_cache(request: Request):
        request.app.state.cache.clear()
        return {'cleared': True}

    return app


app = create_app()


if __name__ == '__main__':
    import uvicorn
    uvicorn.run('fezlacrypt.backend:app', host='0.0.0.0', port=8000, reload=True)
