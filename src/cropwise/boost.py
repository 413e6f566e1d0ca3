"""Boost regions and the detectors that produce them.

A boost region is a weighted rectangle in source coordinates that the scorer
rewards keeping inside the crop.  Detectors (faces, people) run before the
engine and only hand over their boxes; the engine never depends on a backend.
"""

import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence
from urllib.request import urlretrieve

import cv2
import numpy as np

from cropwise.errors import InvalidConfigError
from cropwise.options import (
    YOLO_MODEL_ENV_VAR,
    YUNET_MODEL_ENV_VAR,
    resolve_model_dir,
    resolve_model_override,
)
from cropwise.sampler import to_float_rgb

YUNET_MODEL_FILENAME = "face_detection_yunet_2023mar.onnx"
YUNET_MODEL_URL = (
    "https://github.com/opencv/opencv_zoo/raw/main/models/face_detection_yunet/"
    f"{YUNET_MODEL_FILENAME}"
)
YOLO_MODEL_FILENAME = "yolov8n.pt"
YOLO_MODEL_URL = "https://github.com/ultralytics/assets/releases/latest/download/yolov8n.pt"
HAAR_CASCADE_FILENAME = "haarcascade_frontalface_default.xml"

# COCO class ids YOLO may report as crop-worthy subjects.
COCO_SUBJECT_CLASSES = {
    0: "person",
    15: "cat",
    16: "dog",
    17: "horse",
}

_YOLO_MODEL = None


@dataclass(frozen=True)
class BoostRegion:
    x: float
    y: float
    width: float
    height: float
    weight: float = 1.0

    def __post_init__(self):
        values = (self.x, self.y, self.width, self.height, self.weight)
        if not all(math.isfinite(float(v)) for v in values):
            raise InvalidConfigError(f"Boost region has non-finite values: {values}", "boost", values)
        if self.width <= 0 or self.height <= 0:
            raise InvalidConfigError(
                f"Boost region must have positive size, got {self.width}x{self.height}",
                "boost",
                values,
            )
        if self.weight < 0:
            raise InvalidConfigError(f"Boost weight must be >= 0, got {self.weight}", "boost", values)

    @property
    def area(self) -> float:
        return float(self.width * self.height)

    def to_dict(self) -> dict[str, float]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "weight": self.weight,
        }

    @classmethod
    def from_mapping(cls, data: dict) -> "BoostRegion":
        try:
            return cls(
                x=float(data["x"]),
                y=float(data["y"]),
                width=float(data["width"]),
                height=float(data["height"]),
                weight=float(data.get("weight", 1.0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidConfigError(f"Invalid boost region {data!r}: {e}", "boost", data) from e


def parse_boost(text: str) -> BoostRegion:
    """Parse 'x,y,w,h[,weight]' as given on the command line."""
    parts = [p.strip() for p in text.split(",")]
    if len(parts) not in (4, 5):
        raise InvalidConfigError(f"Boost must be X,Y,W,H[,WEIGHT], got {text!r}", "boost", text)
    try:
        numbers = [float(p) for p in parts]
    except ValueError as e:
        raise InvalidConfigError(f"Boost must be numeric, got {text!r}", "boost", text) from e
    return BoostRegion(*numbers)


def boxes_to_boosts(
    boxes: Iterable[Sequence[float]],
    img_w: int,
    img_h: int,
    weight: float = 1.0,
) -> list[BoostRegion]:
    """Clip XYWH detector boxes to the frame and wrap them as boost regions."""
    boosts: list[BoostRegion] = []
    for box in boxes:
        x, y, w, h = (float(v) for v in box[:4])
        x0 = max(0.0, x)
        y0 = max(0.0, y)
        x1 = min(float(img_w), x + w)
        y1 = min(float(img_h), y + h)
        if x1 > x0 and y1 > y0:
            boosts.append(BoostRegion(x0, y0, x1 - x0, y1 - y0, weight))
    return boosts


class BoostRegionProvider(Protocol):
    name: str

    def detect(self, image: np.ndarray) -> list[BoostRegion]:
        """Detect regions worth keeping in an HxWx3 RGB uint8 image."""
        ...


def _to_bgr_uint8(image: np.ndarray) -> np.ndarray:
    if image.dtype != np.uint8:
        image = (to_float_rgb(image) * 255.0).round().astype(np.uint8)
    if image.ndim == 2 or image.shape[2] == 1:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2BGR)
    return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)


def _download_model(url: str, model_path: Path, env_var: str) -> Path:
    model_path.parent.mkdir(parents=True, exist_ok=True)
    print(f"  ⬇ Model not found; downloading to {model_path} ...", file=sys.stderr)
    try:
        urlretrieve(url, model_path)
    except Exception as e:
        raise RuntimeError(
            f"Could not download model to {model_path}. "
            f"Set {env_var} to a local model path to skip download."
        ) from e
    return model_path


def resolve_model_path(filename: str, url: str, env_var: str) -> Path:
    """
    Resolve detector weights from env override or runtime cache.

    Priority:
      1. explicit local path in env_var (or .env)
      2. <model dir>/<filename>, downloaded on first use
    """
    override = resolve_model_override(env_var)
    if override is not None:
        return override

    model_path = resolve_model_dir() / filename
    if model_path.exists():
        return model_path
    return _download_model(url, model_path, env_var)


class HaarFaceProvider:
    """Frontal faces via the Haar cascade bundled with OpenCV."""

    name = "haar"

    def __init__(
        self,
        cascade_path: Optional[Path] = None,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: tuple[int, int] = (24, 24),
        weight: float = 1.0,
    ):
        if cascade_path is None:
            cascade_path = Path(cv2.data.haarcascades) / HAAR_CASCADE_FILENAME
        self.classifier = cv2.CascadeClassifier(str(cascade_path))
        if self.classifier.empty():
            raise RuntimeError(f"Could not load Haar cascade from {cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size
        self.weight = weight

    def detect(self, image: np.ndarray) -> list[BoostRegion]:
        gray = cv2.cvtColor(_to_bgr_uint8(image), cv2.COLOR_BGR2GRAY)
        faces = self.classifier.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=self.min_size,
        )
        h, w = gray.shape[:2]
        return boxes_to_boosts(list(faces), w, h, weight=self.weight)


class YuNetFaceProvider:
    """Faces via OpenCV's YuNet DNN detector (weights fetched on first use)."""

    name = "yunet"

    def __init__(
        self,
        model_path: Optional[Path] = None,
        score_threshold: float = 0.6,
        weight: float = 1.0,
    ):
        if model_path is None:
            model_path = resolve_model_path(YUNET_MODEL_FILENAME, YUNET_MODEL_URL, YUNET_MODEL_ENV_VAR)
        self.detector = cv2.FaceDetectorYN.create(str(model_path), "", (320, 320), score_threshold)
        self.weight = weight

    def detect(self, image: np.ndarray) -> list[BoostRegion]:
        bgr = _to_bgr_uint8(image)
        h, w = bgr.shape[:2]
        self.detector.setInputSize((w, h))
        _, faces = self.detector.detect(bgr)
        if faces is None:
            return []
        return boxes_to_boosts([face[:4] for face in faces], w, h, weight=self.weight)


def _load_yolo_model(model_path: Optional[Path] = None):
    """Load and cache YOLO model instance."""
    global _YOLO_MODEL
    if _YOLO_MODEL is not None:
        return _YOLO_MODEL

    from ultralytics import YOLO

    if model_path is None:
        model_path = resolve_model_path(YOLO_MODEL_FILENAME, YOLO_MODEL_URL, YOLO_MODEL_ENV_VAR)
    _YOLO_MODEL = YOLO(str(model_path))
    return _YOLO_MODEL


class YoloSubjectProvider:
    """People (and other listed COCO subjects) via Ultralytics YOLO."""

    name = "yolo"

    def __init__(
        self,
        classes: Sequence[int] = (0,),
        min_confidence: float = 0.35,
        weight: float = 1.0,
        model_path: Optional[Path] = None,
    ):
        self.model = _load_yolo_model(model_path)
        self.classes = set(classes)
        self.min_confidence = min_confidence
        self.weight = weight

    def detect(self, image: np.ndarray) -> list[BoostRegion]:
        bgr = _to_bgr_uint8(image)
        h, w = bgr.shape[:2]
        results = self.model(bgr, verbose=False)
        if not results:
            return []
        boxes = results[0].boxes
        if boxes is None or len(boxes) == 0:
            return []

        found = []
        for box in boxes:
            cls_id = int(box.cls[0])
            conf = float(box.conf[0])
            if cls_id not in self.classes or conf < self.min_confidence:
                continue
            x1, y1, x2, y2 = (float(v) for v in box.xyxy[0].cpu().numpy())
            found.append((x1, y1, x2 - x1, y2 - y1))
        return boxes_to_boosts(found, w, h, weight=self.weight)


PROVIDERS = {
    HaarFaceProvider.name: HaarFaceProvider,
    YuNetFaceProvider.name: YuNetFaceProvider,
    YoloSubjectProvider.name: YoloSubjectProvider,
}


def get_provider(name: str, **kwargs) -> BoostRegionProvider:
    try:
        factory = PROVIDERS[name]
    except KeyError:
        raise InvalidConfigError(
            f"Unknown detector model {name!r}; choose from {', '.join(sorted(PROVIDERS))}",
            "model",
            name,
        ) from None
    if name == HaarFaceProvider.name and not hasattr(cv2, "CascadeClassifier"):
        # OpenCV 5 dropped the cascade classifiers
        print("  ⚠ Haar cascades unavailable in this OpenCV build; using yunet", file=sys.stderr)
        factory = PROVIDERS[YuNetFaceProvider.name]
    return factory(**kwargs)
