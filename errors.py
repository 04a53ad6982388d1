class DetectionError(Exception):
    """Base class for failures in the detection pipeline."""

    code = "detection_error"
    status_code = 500


class InvalidImageError(DetectionError):
    """Image payload could not be decoded."""

    code = "invalid_image"


class LabelIndexOutOfRangeError(DetectionError):
    """Winning candidate has no entry in the label table."""

    code = "label_index_out_of_range"

    def __init__(self, index: int, num_labels: int):
        self.index = index
        self.num_labels = num_labels
        super().__init__(
            f"Label index {index} out of range for label table of size {num_labels}"
        )


class ModelLoadError(DetectionError):
    code = "model_load_error"


class ModelInferenceError(DetectionError):
    code = "model_inference_error"


class FetchError(DetectionError):
    code = "fetch_error"


class MissingInputError(DetectionError):
    code = "missing_input"
    status_code = 400
