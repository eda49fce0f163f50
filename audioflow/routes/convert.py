from typing import Annotated

from fastapi import APIRouter, Depends, Request

from audioflow.handlers import get_admission_status, handle_process_video
from audioflow.schemas import AdmissionStatus, ProcessVideoRequest, ProcessVideoResponse
from audioflow.service import ConversionService

convert_router = APIRouter()


def get_conversion_service(request: Request) -> ConversionService:
    return request.app.state.conversion_service


@convert_router.post(
    "/process-video",
    summary="Convert a Drive video to MP3 in Cloud Storage",
    response_model=ProcessVideoResponse,
    response_model_by_alias=True,
    response_description="The source file and the stored audio object",
)
async def process_video(
    params: ProcessVideoRequest,
    service: Annotated[ConversionService, Depends(get_conversion_service)],
):
    """Convert a Google Drive video into a mono MP3 stored in Cloud Storage, reusing an existing conversion."""
    return await handle_process_video(params, service)


@convert_router.get("/status", summary="Current admission state", response_model=AdmissionStatus, response_model_by_alias=True)
async def admission_status(service: Annotated[ConversionService, Depends(get_conversion_service)]):
    return get_admission_status(service)
