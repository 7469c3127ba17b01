"""
Предобработка изображения ответа перед OCR.

Выполняет (в указанном порядке):
    1. Deskew: коррекция наклона скана (опционально)
    2. Resize: ни одна сторона не больше max_image_size, пропорции сохраняются
    3. Резкость: свёртка 3x3 только по RGB, граничные пиксели не меняются
    4. Контраст/яркость: out = clamp((in - 128) * contrast + 128 + brightness)

Шаги 3-4 выполняются только при enhance=True.
Все шаги детерминированы: одинаковый вход даёт побайтно одинаковый выход.
"""

import io
import logging
import math
from typing import Optional

import numpy as np
from deskew import determine_skew
from PIL import Image, UnidentifiedImageError

from grader.config import Settings, settings
from grader.errors import InvalidImageError, ValidationError
from grader.schemas import RasterImage

logger = logging.getLogger(__name__)

# Ядро повышения резкости
SHARPEN_KERNEL = np.array(
    [
        [0, -1, 0],
        [-1, 5, -1],
        [0, -1, 0],
    ],
    dtype=np.int32,
)

# Синонимы MIME подтипов -> имя формата Pillow
_FORMAT_ALIASES = {
    "jpg": "jpeg",
    "pjpeg": "jpeg",
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_target_size(
    width: int,
    height: int,
    max_size: int,
    max_width: Optional[int] = None,
) -> tuple[int, int]:
    """
    Вычисляет размеры после resize.

    Если обе стороны <= max_size, размер не меняется. Иначе масштаб
    min(max_size / width, max_size / height). Дополнительное ограничение
    max_width применяется после основного и пересчитывает высоту.

    Args:
        width: исходная ширина
        height: исходная высота
        max_size: ограничение на любую сторону
        max_width: дополнительное ограничение ширины

    Returns:
        tuple: (ширина, высота)

    Raises:
        InvalidImageError: при нулевых или отрицательных размерах
    """
    if width <= 0 or height <= 0:
        raise InvalidImageError(f"Недопустимые размеры изображения: {width}x{height}")

    target_width, target_height = width, height
    if width > max_size or height > max_size:
        ratio = min(max_size / width, max_size / height)
        target_width = _round_half_up(width * ratio)
        target_height = _round_half_up(height * ratio)

    if max_width and target_width > max_width:
        ratio = max_width / target_width
        target_width = max_width
        target_height = _round_half_up(target_height * ratio)

    return max(1, target_width), max(1, target_height)


def apply_sharpen(image: RasterImage) -> RasterImage:
    """
    Применяет ядро SHARPEN_KERNEL к каналам RGB.

    Граничные пиксели и альфа-канал копируются без изменений.
    Для изображений меньше 3x3 внутренних пикселей нет, вход возвращается как есть.
    """
    arr = _to_array(image)
    if image.width < 3 or image.height < 3:
        return image

    rgb = arr[..., :3].astype(np.int32)
    acc = np.zeros((image.height - 2, image.width - 2, 3), dtype=np.int32)
    for ky in range(3):
        for kx in range(3):
            weight = SHARPEN_KERNEL[ky, kx]
            if weight == 0:
                continue
            acc += weight * rgb[ky:ky + image.height - 2, kx:kx + image.width - 2]

    out = arr.copy()
    out[1:-1, 1:-1, :3] = np.clip(acc, 0, 255).astype(np.uint8)
    return RasterImage(width=image.width, height=image.height, pixels=out.tobytes())


def apply_contrast_brightness(
    image: RasterImage,
    contrast: float = 1.2,
    brightness: float = 10.0,
) -> RasterImage:
    """
    Корректирует контраст и яркость каналов RGB.

    Округление к ближайшему чётному, затем обрезка в 0..255.
    Альфа-канал не меняется.
    """
    arr = _to_array(image)
    rgb = arr[..., :3].astype(np.float64)
    adjusted = (rgb - 128.0) * contrast + 128.0 + brightness

    out = arr.copy()
    out[..., :3] = np.clip(np.rint(adjusted), 0, 255).astype(np.uint8)
    return RasterImage(width=image.width, height=image.height, pixels=out.tobytes())


def _to_array(image: RasterImage) -> np.ndarray:
    return np.frombuffer(image.pixels, dtype=np.uint8).reshape(
        image.height, image.width, 4
    )


class ImagePreprocessor:
    """
    Предобработка изображений ответа.

    Параметры (max_image_size, контраст, яркость, deskew, допустимые форматы)
    берутся из переданного Settings или из глобального settings.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    def load_image(self, data: bytes, content_type: Optional[str] = None) -> RasterImage:
        """
        Проверяет формат загруженного файла и декодирует его в RGBA.

        Args:
            data: содержимое файла
            content_type: MIME тип из запроса (image/png, ...)

        Returns:
            RasterImage: декодированное изображение

        Raises:
            ValidationError: пустой файл или недопустимый формат
            InvalidImageError: файл не декодируется или слишком велик (decompression bomb)
        """
        if not data:
            raise ValidationError("Пустой файл изображения")

        allowed = {fmt.lower() for fmt in self.config.allowed_formats}

        # application/octet-stream разрешаем, многие клиенты не указывают тип
        if content_type and content_type != "application/octet-stream":
            main_type, _, subtype = content_type.partition("/")
            subtype = _FORMAT_ALIASES.get(subtype.lower(), subtype.lower())
            if main_type != "image" or subtype not in allowed:
                raise ValidationError(
                    f"Недопустимый тип файла: {content_type}, "
                    f"разрешены: {', '.join(sorted(allowed))}"
                )

        try:
            with Image.open(io.BytesIO(data)) as img:
                detected = (img.format or "").lower()
                if detected not in allowed:
                    raise ValidationError(
                        f"Недопустимый формат изображения: {detected or 'unknown'}"
                    )
                img.load()
                return RasterImage.from_pil(img)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise InvalidImageError(f"Не удалось декодировать изображение: {e}") from e

    def preprocess(
        self,
        image: RasterImage,
        enhance: bool = False,
        max_width: Optional[int] = None,
        deskew: bool = False,
    ) -> RasterImage:
        """
        Подготавливает изображение к OCR.

        Args:
            image: исходное изображение
            enhance: применить резкость и контраст/яркость
            max_width: дополнительное ограничение ширины
            deskew: скорректировать наклон скана перед resize

        Returns:
            RasterImage: новое изображение (исходное не изменяется)

        Raises:
            InvalidImageError: при недопустимых размерах
        """
        if image.width <= 0 or image.height <= 0:
            raise InvalidImageError(
                f"Недопустимые размеры изображения: {image.width}x{image.height}"
            )

        result = image

        # 1. Deskew
        if deskew:
            result = self.deskew(result)

        # 2. Resize
        target_width, target_height = calculate_target_size(
            result.width,
            result.height,
            self.config.max_image_size,
            max_width,
        )
        if (target_width, target_height) != (result.width, result.height):
            resized = result.to_pil().resize(
                (target_width, target_height),
                Image.Resampling.BICUBIC,
            )
            logger.debug(
                f"Resize: {result.width}x{result.height} -> {target_width}x{target_height}"
            )
            result = RasterImage.from_pil(resized)

        # 3-4. Резкость и контраст
        if enhance:
            result = apply_sharpen(result)
            result = apply_contrast_brightness(
                result,
                contrast=self.config.contrast,
                brightness=self.config.brightness,
            )

        return result

    def detect_skew(self, image: RasterImage) -> float:
        """
        Определяет угол наклона текста.

        Resize до deskew_resize_px по длинной стороне, grayscale,
        затем determine_skew (проекционный профиль).

        Returns:
            float: угол в градусах (0.0, если определить не удалось)
        """
        img = image.to_pil()
        w, h = img.size
        ratio = self.config.deskew_resize_px / max(w, h)
        if ratio < 1:
            img = img.resize(
                (max(1, int(w * ratio)), max(1, int(h * ratio))),
                Image.Resampling.BILINEAR,
            )

        img_array = np.array(img.convert("L"))

        try:
            angle = determine_skew(img_array, num_peaks=self.config.deskew_num_peaks)
        except Exception as e:
            logger.warning(f"Не удалось определить наклон: {e}")
            angle = 0.0

        return float(angle) if angle is not None else 0.0

    def deskew(self, image: RasterImage) -> RasterImage:
        """
        Поворачивает изображение на -angle, если наклон больше skew_threshold.

        Холст расширяется, новые области заливаются белым.
        """
        angle = self.detect_skew(image)
        if abs(angle) <= self.config.skew_threshold:
            return image

        logger.info(f"Коррекция наклона: {angle:.1f}")
        rotated = image.to_pil().rotate(
            -angle,
            resample=Image.Resampling.BICUBIC,
            expand=True,
            fillcolor=(255, 255, 255, 255),
        )
        return RasterImage.from_pil(rotated)
