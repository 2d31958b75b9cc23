"""Audio upload API.

  POST /uploads     store an audio file, return the input_key to submit with
  POST /transcribe  upload and submit a transcription job in one request
"""

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from batchscribe.api.v1.jobs import get_dispatcher, to_http_error
from batchscribe.config import settings
from batchscribe.jobs.dispatcher import validate_request
from batchscribe.jobs.errors import JobError
from batchscribe.jobs.models import JobRequest, JobState, WhisperModel

router = APIRouter()


async def _read_upload(file: UploadFile) -> bytes:
    max_bytes = settings.max_upload_mb * 1024 * 1024
    chunks = []
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)  # 1 MB chunks
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(
                status_code=413, detail=f"File too large (max {settings.max_upload_mb} MB)"
            )
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/uploads", status_code=201)
async def upload_audio(file: UploadFile = File(...)):
    """Persist an audio file in the artifact store."""
    dispatcher = get_dispatcher()
    data = await _read_upload(file)
    try:
        input_key = await dispatcher.upload_input(file.filename or "", data)
    except JobError as exc:
        raise to_http_error(exc)
    return {"input_key": input_key, "size": len(data)}


@router.post("/transcribe", status_code=202)
async def transcribe(
    file: UploadFile = File(...),
    model: str = Form(WhisperModel.LARGE.value),
    language: str = Form("auto"),
):
    """Upload an audio file and start transcribing it."""
    dispatcher = get_dispatcher()
    try:
        # Reject bad parameters before storing anything
        validate_request(JobRequest(input_key=file.filename or "upload", model=model, language=language))
    except JobError as exc:
        raise to_http_error(exc)
    data = await _read_upload(file)
    try:
        input_key = await dispatcher.upload_input(file.filename or "", data)
        job_id = await dispatcher.submit(
            JobRequest(input_key=input_key, model=model, language=language)
        )
    except JobError as exc:
        raise to_http_error(exc)
    return {"job_id": job_id, "input_key": input_key, "status": JobState.PENDING.value}
