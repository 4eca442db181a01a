"""
Ownership tagging for child objects

Every child carries one controller owner reference back to its collector.
The API server uses it for cascade deletion; the reconciler uses it, together
with the common labels, to decide which objects belong to an instance.
"""

import copy
from typing import Any

import kopf

from otelcol_operator.exceptions import OwnershipError
from otelcol_operator.kinds import LABEL_INSTANCE, LABEL_MANAGED_BY, MANAGED_BY
from otelcol_operator.models import CollectorInstance


def ownership_selector(owner: CollectorInstance) -> dict[str, str]:
    """Label selector matching every child of an instance"""
    return {
        LABEL_INSTANCE: owner.instance_label,
        LABEL_MANAGED_BY: MANAGED_BY,
    }


def controller_reference(manifest: dict[str, Any]) -> dict[str, Any] | None:
    """Return the controller-flagged owner reference of an object, if any"""
    metadata = manifest.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("controller"):
            return dict(ref)
    return None


def _refers_to(ref: dict[str, Any], owner: CollectorInstance) -> bool:
    if ref.get("kind") != owner.kind or ref.get("name") != owner.name:
        return False
    # Group must match, the version may differ between API revisions
    if ref.get("apiVersion", "").split("/")[0] != owner.apiVersion.split("/")[0]:
        return False
    if ref.get("uid") and owner.uid:
        return bool(ref["uid"] == owner.uid)
    return True


def tag(manifest: dict[str, Any], owner: CollectorInstance) -> dict[str, Any]:
    """
    Attach the controller owner reference of `owner` to a copy of `manifest`.

    Raises:
        OwnershipError: If the object is already controlled by another owner
    """
    tagged = copy.deepcopy(manifest)
    metadata = tagged.setdefault("metadata", {})
    references = list(metadata.get("ownerReferences") or [])

    existing = controller_reference(tagged)
    if existing is not None:
        if _refers_to(existing, owner):
            return tagged
        raise OwnershipError(
            f"{metadata.get('name')} is already controlled by "
            f"{existing.get('kind')} {existing.get('name')}",
            "tag",
            f"{metadata.get('namespace')}/{metadata.get('name')}",
        )

    references.append(dict(kopf.build_owner_reference(owner.to_owner_body())))
    metadata["ownerReferences"] = references
    return tagged


def is_owned_by(manifest: dict[str, Any], owner: CollectorInstance) -> bool:
    """Whether an object carries the ownership markers and controller reference of `owner`"""
    labels = (manifest.get("metadata") or {}).get("labels") or {}
    for key, value in ownership_selector(owner).items():
        if labels.get(key) != value:
            return False

    ref = controller_reference(manifest)
    return ref is not None and _refers_to(ref, owner)
