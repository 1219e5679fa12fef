"""
Pydantic schemas for the Kidizen Science HTTP API.

Request bodies arrive for a collection resolved at runtime, so each
`EntityKind` names its create and update models below and validates with
`model_validate` instead of binding them as typed route parameters.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StringConstraints,
    model_validator,
)

# Ids are allocated as signed 64-bit integers.
MAX_ENTITY_ID = 2**63 - 1


def is_valid_id(value: Any) -> bool:
    if not isinstance(value, str) or not value.isascii() or not value.isdigit():
        return False
    return 1 <= int(value) <= MAX_ENTITY_ID


def _check_id(value: str) -> str:
    if not is_valid_id(value):
        raise ValueError("ids must be positive 64-bit integers")
    return value


NonEmptyStr = Annotated[str, StringConstraints(strict=True, min_length=1)]
Password = Annotated[str, StringConstraints(strict=True, pattern=r"^[A-Za-z0-9]{8,16}$")]
EntityId = Annotated[str, StringConstraints(strict=True), AfterValidator(_check_id)]
Number = Union[StrictInt, StrictFloat]


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _Patch(_Body):
    """An update body: every field optional, at least one present, none null unless listed."""

    nullable_fields: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def _check_present_fields(self):
        if not self.model_fields_set:
            raise ValueError("at least one property is required")
        for name in self.model_fields_set - self.nullable_fields:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class Image(_Body):
    title: NonEmptyStr
    url: NonEmptyStr
    alt_text: NonEmptyStr


class SecretQuestions(_Body):
    question_1: NonEmptyStr
    question_2: NonEmptyStr
    answer_1: NonEmptyStr
    answer_2: NonEmptyStr

    @model_validator(mode="after")
    def _distinct(self):
        if self.question_1 == self.question_2 or self.answer_1 == self.answer_2:
            raise ValueError("secret questions and answers must differ")
        return self


class ProjectDataNumber(_Body):
    name: NonEmptyStr
    must_be_unique: StrictBool
    number: Number


class ObservationDataNumber(_Body):
    description: NonEmptyStr
    quantity: Number


class TeacherCreate(_Body):
    name: NonEmptyStr
    email: NonEmptyStr
    school: NonEmptyStr
    password: Password
    secret_questions: SecretQuestions


class TeacherUpdate(_Patch):
    # null resets the photo to the default.
    nullable_fields: ClassVar[FrozenSet[str]] = frozenset({"profile_photo"})

    name: Optional[NonEmptyStr] = None
    profile_photo: Optional[NonEmptyStr] = None
    email: Optional[NonEmptyStr] = None
    school: Optional[NonEmptyStr] = None


class ProjectCreate(_Body):
    teacher_id: EntityId
    name: NonEmptyStr
    data_number: ProjectDataNumber
    description_image: Image
    description_text: NonEmptyStr


class ProjectUpdate(_Patch):
    name: Optional[NonEmptyStr] = None
    description_image: Optional[Image] = None
    description_text: Optional[NonEmptyStr] = None


class ObservationCreate(_Body):
    date: NonEmptyStr
    data_image: Image
    data_number: ObservationDataNumber
    data_description: NonEmptyStr


class ObservationUpdate(_Patch):
    date: Optional[NonEmptyStr] = None
    data_image: Optional[Image] = None
    data_number: Optional[ObservationDataNumber] = None
    data_description: Optional[NonEmptyStr] = None


class CredentialCreate(_Body):
    password: Password
    secret_questions: SecretQuestions


class CredentialUpdate(_Patch):
    password: Optional[Password] = None
    secret_questions: Optional[SecretQuestions] = None


class EntityLinkResponse(BaseModel):
    id: str
    self_: str = Field(..., alias="self", serialization_alias="self")

    model_config = ConfigDict(populate_by_name=True)


class EntityListResponse(BaseModel):
    entities: List[Dict[str, Any]]
    next: Optional[str] = None


class ResetChallengeResponse(BaseModel):
    secret_question_1: str
    secret_question_2: str
    reset_code: str


class ImageUploadResponse(BaseModel):
    public_url: str = Field(..., alias="publicUrl", serialization_alias="publicUrl")

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    status: str
