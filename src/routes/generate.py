import logging

from fastapi import APIRouter, Depends

from src.security.deps import GenerationInputs, admit_generation, get_generation_inputs, get_services
from src.services.admission_controller import AdmissionResult
from src.services.startup import AppServices
from src.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/generate", tags=["generation"])
async def generate_image(
    inputs: GenerationInputs = Depends(get_generation_inputs),
    admission: AdmissionResult = Depends(admit_generation),
    services: AppServices = Depends(get_services),
):
    """
    Composite the uploaded photo into a reference photo.

    Usage is committed only after the generator reports success. A failed
    or cancelled generation leaves every counter untouched.
    """
    result = await services.generator.generate(inputs.photo, inputs.reference, inputs.model_type)

    if not result.success:
        logger.warning(
            f"Generation failed for {inputs.reference_name} ({inputs.model_type.value}): {result.error}"
        )
        raise APIExceptions.bad_gateway(result.error or "Image generation failed")

    usage = await admission.commit()

    return {
        "success": True,
        "image": result.data_url(),
        "photoId": inputs.reference_name,
        "modelType": inputs.model_type.value,
        "usage": usage,
    }
