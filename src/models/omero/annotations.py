"""Annotations attached to entities, as listed by the webclient.

The ``/webclient/api/annotations/`` endpoint returns every annotation of an
entity together with the experimenters that own or added them. Owners and
adders are referenced by ID and resolved to full names when the group is
built.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from utils.exceptions import DecodeError

logger = logging.getLogger(__name__)

MAX_RATING = 5

A = TypeVar("A", bound="Annotation")


class _AnnotationModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class AnnotationExperimenter(_AnnotationModel):
    id: int
    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Annotation(_AnnotationModel):
    """Base of every annotation type.

    Subclasses declare the values of the ``class`` key they are built from.
    """

    class_names: ClassVar[tuple[str, ...]] = ()

    id: int
    namespace: str | None = Field(None, alias="ns")
    owner_id: int | None = None
    adder_id: int | None = None
    owner_name: str | None = None
    adder_name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _read_experimenter_ids(cls, data: Any) -> Any:
        # owner is {"id": ...}, the adder is the owner of the link
        if not isinstance(data, dict):
            return data
        data = dict(data)
        owner = data.get("owner")
        if isinstance(owner, dict):
            data.setdefault("owner_id", owner.get("id"))
        link = data.get("link")
        if isinstance(link, dict) and isinstance(link.get("owner"), dict):
            data.setdefault("adder_id", link["owner"].get("id"))
        return data


class MapAnnotation(Annotation):
    """Key-value pairs."""

    class_names: ClassVar[tuple[str, ...]] = ("mapannotationi", "map")

    pairs: tuple[tuple[str, str], ...] = Field((), alias="values")

    @field_validator("pairs", mode="before")
    @classmethod
    def _keep_complete_pairs(cls, values: Any) -> Any:
        if not isinstance(values, list):
            return values
        pairs = []
        for value in values:
            if isinstance(value, list) and len(value) > 1:
                pairs.append((value[0], value[1]))
            else:
                logger.warning("The size of %s is less than two. Skipping it", value)
        return pairs

    @staticmethod
    def combine(annotations: list[MapAnnotation]) -> dict[str, str]:
        """Merge the pairs of several annotations. Later annotations win on duplicate keys."""
        combined: dict[str, str] = {}
        for annotation in annotations:
            combined.update(annotation.pairs)
        return combined


class AttachedFile(_AnnotationModel):
    name: str | None = None
    mimetype: str | None = None
    size: int | None = None


class FileAnnotation(Annotation):
    """A file attached to an entity."""

    class_names: ClassVar[tuple[str, ...]] = ("fileannotationi", "file")

    file: AttachedFile | None = None

    @property
    def file_name(self) -> str | None:
        return self.file.name if self.file else None

    @property
    def mimetype(self) -> str | None:
        return self.file.mimetype if self.file else None


class TagAnnotation(Annotation):
    class_names: ClassVar[tuple[str, ...]] = ("tagannotationi", "tag")

    value: str | None = Field(None, alias="textValue")


class CommentAnnotation(Annotation):
    class_names: ClassVar[tuple[str, ...]] = ("commentannotationi", "comment")

    value: str | None = Field(None, alias="textValue")


class RatingAnnotation(Annotation):
    """A rating between 0 and ``MAX_RATING``."""

    class_names: ClassVar[tuple[str, ...]] = ("longannotationi", "rating")

    value: int = Field(0, alias="longValue")

    @field_validator("value")
    @classmethod
    def _cap(cls, value: int) -> int:
        return min(value, MAX_RATING)


ANNOTATION_CLASSES: tuple[type[Annotation], ...] = (
    MapAnnotation,
    FileAnnotation,
    TagAnnotation,
    CommentAnnotation,
    RatingAnnotation,
)


def _annotation_class(class_name: str) -> type[Annotation] | None:
    for annotation_class in ANNOTATION_CLASSES:
        if class_name.lower() in annotation_class.class_names:
            return annotation_class
    return None


class AnnotationGroup(BaseModel):
    """Every annotation of one entity."""

    model_config = ConfigDict(frozen=True)

    annotations: tuple[Annotation, ...] = ()

    @classmethod
    def from_json(cls, raw: Any) -> AnnotationGroup:
        """Parse a webclient annotations response.

        Annotations of an unknown class or with invalid fields are logged and
        skipped. Experimenters that cannot be parsed are skipped too.

        Raises:
            DecodeError: If the ``annotations`` or ``experimenters`` array is missing
        """
        if not isinstance(raw, dict) or not isinstance(raw.get("annotations"), list):
            raise DecodeError("'annotations' array not found", raw)
        if not isinstance(raw.get("experimenters"), list):
            raise DecodeError("'experimenters' array not found", raw)

        experimenters = {}
        for raw_experimenter in raw["experimenters"]:
            try:
                experimenter = AnnotationExperimenter.model_validate(raw_experimenter)
            except ValidationError as e:
                logger.warning("Cannot read experimenter %s. Skipping it: %s", raw_experimenter, e)
                continue
            experimenters[experimenter.id] = experimenter

        annotations = []
        for raw_annotation in raw["annotations"]:
            class_name = (
                raw_annotation.get("class") if isinstance(raw_annotation, dict) else None
            )
            annotation_class = (
                _annotation_class(class_name) if isinstance(class_name, str) else None
            )
            if annotation_class is None:
                logger.warning(
                    "Annotation class %s not recognized. Skipping %s", class_name, raw_annotation
                )
                continue
            try:
                annotation = annotation_class.model_validate(raw_annotation)
            except ValidationError as e:
                logger.warning("Cannot read annotation %s. Skipping it: %s", raw_annotation, e)
                continue

            owner = experimenters.get(annotation.owner_id)
            adder = experimenters.get(annotation.adder_id)
            annotations.append(
                annotation.model_copy(
                    update={
                        "owner_name": owner.full_name if owner else None,
                        "adder_name": adder.full_name if adder else None,
                    }
                )
            )

        return cls(annotations=tuple(annotations))

    def of_type(self, annotation_class: type[A]) -> list[A]:
        return [a for a in self.annotations if isinstance(a, annotation_class)]

    def __len__(self) -> int:
        return len(self.annotations)
