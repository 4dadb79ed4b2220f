"""
Deployment Target Model
=======================
A named remote workload the reconciler converges onto an image reference.

The remote control plane is the source of truth: current_image_ref is only
an observation from the latest probe and is never trusted across stages.
`containers` names the containers whose template image is the placeholder;
only those are ever re-pointed at a new image.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class DeploymentTarget(BaseModel):
    name: str
    manifest_template: str
    desired_image_ref: str
    kind: str = "deployment"
    containers: List[str] = Field(default_factory=list)
    service_manifest: Optional[str] = None
    current_image_ref: Optional[str] = None
