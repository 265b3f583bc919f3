from pydantic import BaseModel, Field, model_validator


class ProjectRules(BaseModel):
    slug: str
    rules_version: str


class AnalyticsRules(BaseModel):
    enabled: bool = True
    event_types: list[str] = Field(
        default_factory=lambda: ["view", "like", "comment", "share", "click", "impression"]
    )
    platforms: list[str] = Field(
        default_factory=lambda: [
            "instagram",
            "facebook",
            "tiktok",
            "linkedin",
            "youtube",
            "google_ads",
        ]
    )
    max_event_value: int = Field(default=1_000_000, ge=1)
    max_metadata_bytes: int = Field(default=10_000, ge=0)
    clamp_rates: bool = True
    max_update_retries: int = Field(default=5, ge=0)
    top_posts_default_limit: int = Field(default=10, ge=1)
    top_posts_max_limit: int = Field(default=100, ge=1)
    audit_enabled: bool = True

    @model_validator(mode="after")
    def _check_limits(self) -> "AnalyticsRules":
        if self.top_posts_default_limit > self.top_posts_max_limit:
            raise ValueError("top_posts_default_limit must not exceed top_posts_max_limit")
        return self


class RbacRules(BaseModel):
    roles: list[str]
    rebuild_roles: list[str]


class OpsRules(BaseModel):
    data_dir_required: bool
    required_env: list[str]


class Rules(BaseModel):
    project: ProjectRules
    analytics: AnalyticsRules
    rbac: RbacRules
    ops: OpsRules

    @model_validator(mode="after")
    def _check_rebuild_roles(self) -> "Rules":
        unknown = set(self.rbac.rebuild_roles) - set(self.rbac.roles)
        if unknown:
            raise ValueError(f"rebuild_roles not declared in roles: {sorted(unknown)}")
        return self
