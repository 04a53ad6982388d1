import onnxruntime
import numpy as np
from PIL import Image
import requests
import io
import base64
import binascii
import logging
import math
from dataclasses import dataclass
from typing import Union, Tuple, List, Dict, Optional, Sequence
from pathlib import Path
import time

from config import Settings, DEFAULT_LABELS
from errors import (
    InvalidImageError,
    LabelIndexOutOfRangeError,
    ModelInferenceError,
    FetchError,
)

logger = logging.getLogger(__name__)

ImageInput = Union[str, bytes, np.ndarray, Image.Image]


@dataclass(frozen=True)
class Letterbox:
    """Geometry of a letterbox resize, used to map boxes back to the source image."""

    scale: float
    pad_x: int
    pad_y: int
    width: int
    height: int

    def to_original(self, bbox: Sequence[float]) -> List[float]:
        """Map a (cx, cy, w, h) box from tensor pixels to source-image pixels."""
        cx, cy, w, h = bbox
        return [
            (cx - self.pad_x) / self.scale,
            (cy - self.pad_y) / self.scale,
            w / self.scale,
            h / self.scale,
        ]


class ImagePreprocessor:
    """Handles letterbox preprocessing for NHWC detection models."""

    def __init__(self, target_size: int = 640):
        self.target_size = target_size
        self.fill_color = (0, 0, 0)

    def load_image(self, image_input: ImageInput) -> Image.Image:
        """Load image from various input formats."""
        if isinstance(image_input, Image.Image):
            return image_input

        if isinstance(image_input, np.ndarray):
            if image_input.dtype != np.uint8:
                image_input = (image_input * 255).astype(np.uint8)
            return Image.fromarray(image_input)

        if isinstance(image_input, str):
            # File path
            if not Path(image_input).exists():
                raise FileNotFoundError(f"Image file not found: {image_input}")
            source = image_input
        elif isinstance(image_input, (bytes, bytearray)):
            source = io.BytesIO(image_input)
        else:
            raise ValueError(f"Unsupported image input type: {type(image_input)}")

        try:
            image = Image.open(source)
            # Image.open is lazy; force the decode so corrupt payloads fail here
            image.load()
        except (OSError, SyntaxError) as e:
            logger.error(f"Error loading image: {e}")
            raise InvalidImageError(f"Could not decode image: {e}") from e
        return image

    def load_image_from_base64(self, base64_string: str) -> Image.Image:
        """Load image from base64 string."""
        # Remove data URL prefix if present
        if base64_string.startswith('data:image'):
            base64_string = base64_string.split(',', 1)[1]

        try:
            image_bytes = base64.b64decode(base64_string)
        except (binascii.Error, ValueError) as e:
            logger.error(f"Error decoding base64 image: {e}")
            raise InvalidImageError(f"Invalid base64 image payload: {e}") from e

        return self.load_image(image_bytes)

    def convert_to_rgb(self, image: Image.Image) -> Image.Image:
        """Convert image to RGB format if needed, dropping any alpha channel."""
        if image.mode != 'RGB':
            logger.debug(f"Converting image from {image.mode} to RGB")
            image = image.convert('RGB')
        return image

    def letterbox(self, image: Image.Image, size: int = None) -> Tuple[Image.Image, Letterbox]:
        """
        Scale the image so its longer side equals ``size`` and center it on a
        black square canvas.

        Returns:
            The padded image and the geometry needed to undo the transform.
        """
        if size is None:
            size = self.target_size

        width, height = image.size
        scale = size / max(width, height)
        new_width = max(1, int(round(width * scale)))
        new_height = max(1, int(round(height * scale)))

        resized = image.resize((new_width, new_height), Image.LANCZOS)
        canvas = Image.new('RGB', (size, size), self.fill_color)
        pad_x = (size - new_width) // 2
        pad_y = (size - new_height) // 2
        canvas.paste(resized, (pad_x, pad_y))

        return canvas, Letterbox(scale=scale, pad_x=pad_x, pad_y=pad_y,
                                 width=width, height=height)

    def prepare(self, image_input: ImageInput) -> Tuple[np.ndarray, Letterbox]:
        """
        Complete preprocessing pipeline.

        Args:
            image_input: Input image in various formats

        Returns:
            Float32 array with shape (1, size, size, 3) in [0, 1] and the
            letterbox geometry
        """
        image = self.load_image(image_input)
        image = self.convert_to_rgb(image)
        image, geometry = self.letterbox(image)

        image_array = np.asarray(image, dtype=np.float32) / 255.0

        # Add batch dimension
        image_array = np.expand_dims(image_array, axis=0)

        return image_array, geometry

    def preprocess(self, image_input: ImageInput) -> np.ndarray:
        tensor, _ = self.prepare(image_input)
        return tensor


class ONNXModel:
    """Handles ONNX model loading and inference."""

    def __init__(self, model_path: str = "models/model.onnx"):
        self.model_path = model_path
        self.session = None
        self.input_name = None
        self.output_name = None
        self.input_shape = None
        self.output_shape = None
        self._load_model()

    def _load_model(self):
        """Load ONNX model and initialize session."""
        if not Path(self.model_path).exists():
            raise FileNotFoundError(f"ONNX model not found: {self.model_path}")

        logger.info(f"Loading ONNX model from: {self.model_path}")

        providers = ['CPUExecutionProvider']
        if onnxruntime.get_device() == 'GPU':
            providers.insert(0, 'CUDAExecutionProvider')

        try:
            self.session = onnxruntime.InferenceSession(
                self.model_path,
                providers=providers
            )
        except Exception as e:
            logger.error(f"Error loading ONNX model: {e}")
            raise

        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name
        self.input_shape = self.session.get_inputs()[0].shape
        self.output_shape = self.session.get_outputs()[0].shape

        logger.info("Model loaded successfully")
        logger.info(f"Input: {self.input_name} {self.input_shape}")
        logger.info(f"Output: {self.output_name} {self.output_shape}")
        logger.info(f"Providers: {self.session.get_providers()}")

    def _check_input_shape(self, input_array: np.ndarray):
        # Symbolic dims (e.g. 'batch') accept any size
        expected = list(self.input_shape or [])
        actual = list(input_array.shape)
        mismatch = len(expected) != len(actual) or any(
            isinstance(want, int) and want != got
            for want, got in zip(expected[1:], actual[1:])
        )
        if mismatch:
            raise ValueError(f"Input shape mismatch. Expected: {tuple(expected)}, Got: {input_array.shape}")

    def predict(self, input_array: np.ndarray) -> np.ndarray:
        """Run inference on input array."""
        if self.session is None:
            raise ModelInferenceError("Model not loaded")

        self._check_input_shape(input_array)

        start_time = time.time()
        try:
            outputs = self.session.run([self.output_name], {self.input_name: input_array})
        except Exception as e:
            logger.error(f"Error during inference: {e}")
            raise ModelInferenceError(f"Inference failed: {e}") from e
        inference_time = time.time() - start_time

        logger.debug(f"Inference completed in {inference_time:.3f}s")

        return outputs[0]

    def get_model_info(self) -> Dict:
        """Get model information."""
        return {
            'model_path': self.model_path,
            'input_name': self.input_name,
            'output_name': self.output_name,
            'input_shape': self.input_shape,
            'output_shape': self.output_shape,
            'providers': self.session.get_providers() if self.session else None
        }


@dataclass
class Detection:
    label: str
    confidence: float
    bbox: List[float]
    block_number: int = 0
    block_offset: int = 0

    def to_dict(self) -> Dict:
        return {
            'disease': self.label,
            'confidence': self.confidence,
            # Non-finite box values serialize as null
            'bbox': [v if math.isfinite(v) else None for v in self.bbox],
        }


class DetectionDecoder:
    """
    Picks the single highest-objectness candidate from a raw detection output.

    The raw output is a flat run of fixed-size candidate blocks: four box
    values (cx, cy, w, h in input-tensor pixels), one objectness score, then
    per-class scores. Only objectness is ranked; the winning block number
    indexes the label table directly. Boxes are returned as emitted by the
    model.
    """

    BOX_SIZE = 4
    CONFIDENCE_OFFSET = 4

    def __init__(self, labels: Sequence[str], block_size: int = 85):
        if block_size <= self.CONFIDENCE_OFFSET:
            raise ValueError(f"block_size must be greater than {self.CONFIDENCE_OFFSET}, got {block_size}")
        self.labels = tuple(labels)
        self.block_size = block_size

    def select(self, values: np.ndarray) -> Tuple[int, float]:
        """Return (block_number, confidence) of the first strictly-highest candidate."""
        confidences = values[self.CONFIDENCE_OFFSET::self.block_size]
        if confidences.size == 0:
            return 0, 0.0

        # NaN and infinite scores never win
        confidences = np.where(np.isfinite(confidences), confidences, -np.inf)
        # argmax keeps the first occurrence on ties
        best = int(np.argmax(confidences))
        if confidences[best] <= 0:
            return 0, 0.0
        return best, float(confidences[best])

    def decode(self, raw) -> Detection:
        values = np.asarray(raw, dtype=np.float64).ravel()

        block_number, confidence = self.select(values)
        block_offset = block_number * self.block_size

        bbox = [float(v) for v in values[block_offset:block_offset + self.BOX_SIZE]]
        bbox += [0.0] * (self.BOX_SIZE - len(bbox))

        if block_number >= len(self.labels):
            raise LabelIndexOutOfRangeError(block_number, len(self.labels))

        return Detection(
            label=self.labels[block_number],
            confidence=confidence,
            bbox=bbox,
            block_number=block_number,
            block_offset=block_offset,
        )


def fetch_image(url: str, timeout: float = 10.0) -> bytes:
    """Download an image and return the response body."""
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Error fetching image from {url}: {e}")
        raise FetchError(f"Failed to fetch image from {url}: {e}") from e
    return response.content


class ModelService:
    """Main service orchestrating preprocessing, inference and decoding."""

    def __init__(self, model_path: str = "models/model.onnx",
                 labels: Sequence[str] = DEFAULT_LABELS,
                 input_size: int = 640,
                 block_size: int = 85,
                 restore_bbox_coordinates: bool = False,
                 fetch_timeout: float = 10.0,
                 model: Optional[ONNXModel] = None):
        self.preprocessor = ImagePreprocessor(target_size=input_size)
        self.model = model if model is not None else ONNXModel(model_path)
        self.decoder = DetectionDecoder(labels, block_size=block_size)
        self.restore_bbox_coordinates = restore_bbox_coordinates
        self.fetch_timeout = fetch_timeout

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[ONNXModel] = None) -> "ModelService":
        return cls(
            model_path=settings.model_path,
            labels=settings.labels,
            input_size=settings.input_size,
            block_size=settings.block_size,
            restore_bbox_coordinates=settings.restore_bbox_coordinates,
            fetch_timeout=settings.fetch_timeout,
            model=model,
        )

    def detect_with_timing(self, image_input: ImageInput) -> Tuple[Detection, Dict[str, float]]:
        """
        Detect the most confident object in an image.

        Returns:
            The decoded detection and a dict of stage timings in seconds
        """
        start_time = time.time()
        tensor, geometry = self.preprocessor.prepare(image_input)
        preprocess_time = time.time() - start_time

        inference_start = time.time()
        raw = self.model.predict(tensor)
        inference_time = time.time() - inference_start

        detection = self.decoder.decode(raw)
        if self.restore_bbox_coordinates:
            detection.bbox = geometry.to_original(detection.bbox)

        timings = {
            'preprocessing': preprocess_time,
            'inference': inference_time,
            'total': time.time() - start_time,
        }
        logger.debug(f"Detected {detection.label} ({detection.confidence:.4f}) in {timings['total']:.3f}s")
        return detection, timings

    def detect(self, image_input: ImageInput) -> Detection:
        detection, _ = self.detect_with_timing(image_input)
        return detection

    def detect_base64(self, base64_string: str) -> Detection:
        image = self.preprocessor.load_image_from_base64(base64_string)
        return self.detect(image)

    def detect_url(self, url: str) -> Detection:
        return self.detect(fetch_image(url, timeout=self.fetch_timeout))

    def get_service_info(self) -> Dict:
        """Get service information."""
        return {
            'model_info': self.model.get_model_info(),
            'labels': list(self.decoder.labels),
            'input_size': self.preprocessor.target_size,
            'block_size': self.decoder.block_size,
            'restore_bbox_coordinates': self.restore_bbox_coordinates,
        }


def load_model_service(settings: Optional[Settings] = None) -> ModelService:
    """Load and return a ModelService instance."""
    return ModelService.from_settings(settings or Settings())


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    service = load_model_service()
    logger.info(f"Service info: {service.get_service_info()}")

    for img_path in sys.argv[1:]:
        detection, timings = service.detect_with_timing(img_path)
        logger.info(f"{img_path}: {detection.to_dict()} in {timings['total']:.3f}s")
