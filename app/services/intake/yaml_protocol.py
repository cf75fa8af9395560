"""YAML-backed intake protocol provider."""
import yaml
from pathlib import Path
from typing import Optional
from app.services.intake.base import (
    CoverageCategory,
    IntakeProtocol,
    IntakeProtocolProvider,
)


DEFAULT_INSTRUCTIONS = (
    "You are a helpful clinical assistant conducting a pre-appointment medical "
    "history interview. Ask exactly one question per turn. Do not begin the "
    "interview until the caller has agreed to continue."
)

DEFAULT_CATEGORIES = [
    CoverageCategory(
        name="medical_history",
        label="past medical history",
        prompt="any past medical conditions or surgeries",
        fields=["past_medical_history"],
    ),
    CoverageCategory(
        name="medications",
        label="current medications",
        prompt="any medications you currently take",
        fields=["medications"],
    ),
    CoverageCategory(
        name="allergies",
        label="allergies",
        prompt="any allergies you have",
        fields=["allergies"],
    ),
]


class YamlIntakeProtocolProvider(IntakeProtocolProvider):
    """Intake protocol provider using YAML configuration."""

    def __init__(self, protocol_file: Optional[str] = None):
        """Initialize with optional protocol file path."""
        if protocol_file is None:
            protocol_file = Path(__file__).parent / "data" / "protocol.yaml"
        self.protocol_file = Path(protocol_file)
        self._protocol: Optional[IntakeProtocol] = None

    def _load_protocol(self) -> IntakeProtocol:
        """Load protocol from YAML file."""
        if self._protocol is None:
            if not self.protocol_file.exists():
                # Built-in protocol if file doesn't exist
                self._protocol = IntakeProtocol(
                    instructions=DEFAULT_INSTRUCTIONS,
                    greeting=(
                        "Hello, I'm a virtual clinical assistant calling to go over your "
                        "medical history before your appointment. Is now a good time to continue?"
                    ),
                    coverage_categories=list(DEFAULT_CATEGORIES),
                )
            else:
                with open(self.protocol_file, "r") as f:
                    data = yaml.safe_load(f) or {}
                self._protocol = IntakeProtocol(**data)
        return self._protocol

    async def get_protocol(self) -> IntakeProtocol:
        """Get the full intake protocol."""
        return self._load_protocol()
