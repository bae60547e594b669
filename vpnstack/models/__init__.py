"""Data models for vpnstack."""
from vpnstack.models.artifacts import Artifact, ArtifactSet, Documents
from vpnstack.models.lifecycle import HealthReport, StackState
from vpnstack.models.parameters import StackParameters, collect
from vpnstack.models.secrets import SecretMaterial

__all__ = [
    'Artifact',
    'ArtifactSet',
    'Documents',
    'HealthReport',
    'StackState',
    'StackParameters',
    'collect',
    'SecretMaterial',
]
