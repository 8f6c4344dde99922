"""DID document helpers for did:webvh.

Documents are plain JSON objects (``dict``). This module builds the
placeholder DID used before the SCID is known, Multikey verification
methods, and :class:`DocumentPatch`, the ordered set of changes an update
applies to the previous document state.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from webvh.errors import ConfigError

METHOD = "webvh"
METHOD_VERSION = "0.5"
SCID_PLACEHOLDER = "{SCID}"

BASE_CONTEXT = (
    "https://www.w3.org/ns/did/v1",
    "https://w3id.org/security/multikey/v1",
)


class KeyPurpose(str, Enum):
    """Verification relationships a key can be referenced from."""
    AUTHENTICATION = "authentication"
    ASSERTION_METHOD = "assertionMethod"
    KEY_AGREEMENT = "keyAgreement"
    CAPABILITY_INVOCATION = "capabilityInvocation"
    CAPABILITY_DELEGATION = "capabilityDelegation"


def default_did(url: str) -> str:
    """Placeholder DID for a hosting URL.

    ``https://example.com:8080/dids/issuer`` becomes
    ``did:webvh:{SCID}:example.com%3A8080:dids:issuer``.
    """
    parsed = urlparse(url if "://" in url else f"https://{url}")
    if not parsed.hostname:
        raise ConfigError(f"cannot derive a DID from URL {url!r}")
    host = parsed.hostname.lower()
    if parsed.port:
        host = f"{host}%3A{parsed.port}"
    segments = [s for s in parsed.path.split("/") if s]
    if segments and segments[-1] == ".well-known":
        segments = segments[:-1]
    return ":".join([f"did:{METHOD}", SCID_PLACEHOLDER, host, *segments])


def scid_of(did: str) -> str:
    """SCID component of a ``did:webvh:<scid>:<host...>`` string."""
    parts = did.split(":")
    if len(parts) < 4 or parts[0] != "did" or parts[1] != METHOD:
        raise ConfigError(f"not a did:{METHOD} identifier: {did!r}")
    return parts[2]


def document_template(did: str) -> Dict[str, Any]:
    """Minimal DID document carrying the base contexts for this method."""
    return {"@context": list(BASE_CONTEXT), "id": did}


def ensure_base_context(document: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(document)
    ctx = doc.get("@context")
    if ctx is None:
        ctx = []
    elif not isinstance(ctx, list):
        ctx = [ctx]
    for c in BASE_CONTEXT:
        if c not in ctx:
            ctx.append(c)
    doc["@context"] = ctx
    return doc


def verification_method(
    did: str,
    multikey: str,
    fragment: Optional[str] = None,
    controller: Optional[str] = None,
) -> Dict[str, Any]:
    """Multikey verification method; the fragment defaults to the key itself."""
    return {
        "id": f"{did}#{fragment or multikey}",
        "type": "Multikey",
        "controller": controller or did,
        "publicKeyMultibase": multikey,
    }


def service(did: str, fragment: str, service_type: str, endpoint: Any) -> Dict[str, Any]:
    return {
        "id": f"{did}#{fragment}",
        "type": service_type,
        "serviceEndpoint": endpoint,
    }


def _ref_id(ref: Any) -> str:
    return ref.get("id", "") if isinstance(ref, dict) else str(ref)


@dataclass
class DocumentPatch:
    """Ordered changes applied to a copy of the previous document state.

    Example:
        patch = (DocumentPatch()
                 .add_verification_method(vm, [KeyPurpose.AUTHENTICATION])
                 .add_service(svc))
        new_state = patch.apply(old_state)
    """

    operations: List[Callable[[Dict[str, Any]], None]] = field(default_factory=list)
    descriptions: List[str] = field(default_factory=list)

    def _push(self, description: str, op: Callable[[Dict[str, Any]], None]) -> "DocumentPatch":
        self.operations.append(op)
        self.descriptions.append(description)
        return self

    def add_verification_method(
        self,
        vm: Dict[str, Any],
        purposes: Sequence[KeyPurpose] = (),
    ) -> "DocumentPatch":
        vm = copy.deepcopy(vm)
        vm_id = vm.get("id")
        if not vm_id:
            raise ConfigError("verification method requires an id")

        def op(doc: Dict[str, Any]) -> None:
            methods = doc.setdefault("verificationMethod", [])
            if any(m.get("id") == vm_id for m in methods):
                raise ConfigError(f"verification method {vm_id} already exists")
            methods.append(copy.deepcopy(vm))
            for purpose in purposes:
                refs = doc.setdefault(KeyPurpose(purpose).value, [])
                if vm_id not in (_ref_id(r) for r in refs):
                    refs.append(vm_id)

        return self._push(f"add verification method {vm_id}", op)

    def remove_verification_method(self, vm_id: str) -> "DocumentPatch":
        def op(doc: Dict[str, Any]) -> None:
            methods = doc.get("verificationMethod") or []
            kept = [m for m in methods if m.get("id") != vm_id]
            if len(kept) == len(methods):
                raise ConfigError(f"verification method {vm_id} not found")
            doc["verificationMethod"] = kept
            for purpose in KeyPurpose:
                refs = doc.get(purpose.value)
                if refs is None:
                    continue
                remaining = [r for r in refs if _ref_id(r) != vm_id]
                if remaining:
                    doc[purpose.value] = remaining
                else:
                    del doc[purpose.value]
            if not kept:
                del doc["verificationMethod"]

        return self._push(f"remove verification method {vm_id}", op)

    def add_service(self, svc: Dict[str, Any]) -> "DocumentPatch":
        svc = copy.deepcopy(svc)
        svc_id = svc.get("id")
        if not svc_id:
            raise ConfigError("service requires an id")

        def op(doc: Dict[str, Any]) -> None:
            services = doc.setdefault("service", [])
            if any(s.get("id") == svc_id for s in services):
                raise ConfigError(f"service {svc_id} already exists")
            services.append(copy.deepcopy(svc))

        return self._push(f"add service {svc_id}", op)

    def remove_service(self, svc_id: str) -> "DocumentPatch":
        def op(doc: Dict[str, Any]) -> None:
            services = doc.get("service") or []
            kept = [s for s in services if s.get("id") != svc_id]
            if len(kept) == len(services):
                raise ConfigError(f"service {svc_id} not found")
            if kept:
                doc["service"] = kept
            else:
                del doc["service"]

        return self._push(f"remove service {svc_id}", op)

    def add_also_known_as(self, uri: str) -> "DocumentPatch":
        def op(doc: Dict[str, Any]) -> None:
            aka = doc.setdefault("alsoKnownAs", [])
            if uri not in aka:
                aka.append(uri)

        return self._push(f"add alsoKnownAs {uri}", op)

    def set_controller(self, *controllers: str) -> "DocumentPatch":
        def op(doc: Dict[str, Any]) -> None:
            if not controllers:
                doc.pop("controller", None)
            elif len(controllers) == 1:
                doc["controller"] = controllers[0]
            else:
                doc["controller"] = list(controllers)

        return self._push("set controller", op)

    def apply(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Return a new document; ``document`` itself is never modified."""
        doc = copy.deepcopy(document)
        for op in self.operations:
            op(doc)
        return doc

    def __len__(self) -> int:
        return len(self.operations)
