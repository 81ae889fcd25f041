"""Kubernetes distribution namespaces in etcd."""

from __future__ import annotations

import enum

from etcd_to_s3.probe import ProtocolVersion
from etcd_to_s3.walker import KeyspaceWalker

LEGACY_KUBERNETES_PREFIX = "/kubernetes.io"
KUBERNETES_PREFIX = "/registry"
OPENSHIFT_PREFIX = "/openshift.io"


class KubernetesDistro(enum.Enum):
    VANILLA = "vanilla"
    OPENSHIFT = "openshift"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    KubernetesDistro.VANILLA: "Vanilla Kubernetes",
    KubernetesDistro.OPENSHIFT: "OpenShift",
}

_NAMESPACE_PREFIXES: dict[tuple[KubernetesDistro, ProtocolVersion], tuple[str, ...]] = {
    (KubernetesDistro.VANILLA, ProtocolVersion.V2): (LEGACY_KUBERNETES_PREFIX,),
    (KubernetesDistro.VANILLA, ProtocolVersion.V3): (KUBERNETES_PREFIX,),
    (KubernetesDistro.OPENSHIFT, ProtocolVersion.V2): (OPENSHIFT_PREFIX,),
    (KubernetesDistro.OPENSHIFT, ProtocolVersion.V3): (OPENSHIFT_PREFIX,),
}


def namespace_prefixes(
    distro: KubernetesDistro, protocol: ProtocolVersion
) -> tuple[str, ...]:
    """Prefixes holding the objects that belong to ``distro`` itself."""
    return _NAMESPACE_PREFIXES[(distro, protocol)]


def backup_prefixes(
    distro: KubernetesDistro, protocol: ProtocolVersion
) -> tuple[str, ...]:
    """Prefixes a backup walks: the Kubernetes core plus any distro extras."""
    prefixes = namespace_prefixes(KubernetesDistro.VANILLA, protocol)
    if distro is not KubernetesDistro.VANILLA:
        prefixes = prefixes + namespace_prefixes(distro, protocol)
    return prefixes


def probe_distro(walker: KeyspaceWalker) -> KubernetesDistro:
    for prefix in namespace_prefixes(
        KubernetesDistro.OPENSHIFT, walker.protocol_version
    ):
        if walker.has_keys(prefix):
            return KubernetesDistro.OPENSHIFT
    return KubernetesDistro.VANILLA
