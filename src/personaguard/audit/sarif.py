"""SARIF 2.1.0 output models."""

from pydantic import BaseModel, Field

from .. import __version__

SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"


class SarifMessage(BaseModel):
    text: str


class SarifArtifactLocation(BaseModel):
    uri: str
    uriBaseId: str | None = None


class SarifRegion(BaseModel):
    startLine: int
    snippet: SarifMessage | None = None


class SarifPhysicalLocation(BaseModel):
    artifactLocation: SarifArtifactLocation
    region: SarifRegion | None = None


class SarifLocation(BaseModel):
    physicalLocation: SarifPhysicalLocation


class SarifRuleConfig(BaseModel):
    level: str = "warning"


class SarifRule(BaseModel):
    id: str
    name: str
    shortDescription: SarifMessage
    fullDescription: SarifMessage | None = None
    help: SarifMessage | None = None
    helpUri: str | None = None
    defaultConfiguration: SarifRuleConfig = Field(default_factory=SarifRuleConfig)
    properties: dict[str, object] = Field(default_factory=dict)


class SarifDriver(BaseModel):
    name: str = "personaguard-audit"
    version: str = __version__
    rules: list[SarifRule] = Field(default_factory=list)


class SarifTool(BaseModel):
    driver: SarifDriver = Field(default_factory=SarifDriver)


class SarifSuppression(BaseModel):
    kind: str = "external"
    justification: str


class SarifResult(BaseModel):
    ruleId: str
    level: str = "warning"
    message: SarifMessage
    locations: list[SarifLocation] = Field(default_factory=list)
    suppressions: list[SarifSuppression] | None = None


class SarifRun(BaseModel):
    tool: SarifTool = Field(default_factory=SarifTool)
    results: list[SarifResult] = Field(default_factory=list)


class SarifReport(BaseModel):
    schema_uri: str = Field(default=SARIF_SCHEMA, serialization_alias="$schema")
    version: str = "2.1.0"
    runs: list[SarifRun] = Field(default_factory=list)
