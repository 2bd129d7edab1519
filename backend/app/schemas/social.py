from pydantic import BaseModel, field_validator


MIN_SPLIT_PARTICIPANTS = 2
MAX_SPLIT_PARTICIPANTS = 10


class FriendRequestCreate(BaseModel):
    addressee_id: str


class SplitClaimCreate(BaseModel):
    target_participants: int

    @field_validator("target_participants")
    @classmethod
    def _target_in_range(cls, value: int) -> int:
        if not MIN_SPLIT_PARTICIPANTS <= value <= MAX_SPLIT_PARTICIPANTS:
            raise ValueError(
                f"Target participants must be between {MIN_SPLIT_PARTICIPANTS} and {MAX_SPLIT_PARTICIPANTS}"
            )
        return value
