"""Fleet provider — knight status from the orchestrator's pod list."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from roundtable.providers.errors import NotFound, ProviderUnavailable
from roundtable.providers.kube import KubeClient

log = structlog.get_logger()

KNIGHT_SELECTOR = "app.kubernetes.io/name=knight"
INSTANCE_LABEL = "app.kubernetes.io/instance"
DOMAIN_LABEL = "roundtable.io/domain"


@dataclass
class KnightStatus:
    name: str
    domain: str = ""
    status: str = "offline"   # online | offline | starting | busy
    ready: bool = False
    restarts: int = 0
    age: str = ""
    image: str = ""
    skills: int = 0
    nix_tools: int = 0
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "domain": self.domain,
            "status": self.status,
            "ready": self.ready,
            "restarts": self.restarts,
            "age": self.age,
            "image": self.image,
            "skills": self.skills,
            "nixTools": self.nix_tools,
            "labels": dict(self.labels),
        }


def format_age(seconds: float) -> str:
    """Whole-second duration in the orchestrator's style: 45s, 2m0s, 1h2m3s."""
    total = max(int(round(seconds)), 0)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _parse_k8s_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def pod_to_knight(pod: dict[str, Any], now: datetime | None = None) -> KnightStatus | None:
    """Map one pod to a KnightStatus; CronJob pods and empty pods are skipped."""
    metadata = pod.get("metadata") or {}
    spec = pod.get("spec") or {}
    status = pod.get("status") or {}
    labels = metadata.get("labels") or {}

    if "job-name" in labels:
        return None
    containers = spec.get("containers") or []
    if not containers:
        return None

    state, ready, restarts = "offline", False, 0
    container_statuses = status.get("containerStatuses") or []
    if container_statuses:
        cs = container_statuses[0]
        restarts = int(cs.get("restartCount") or 0)
        ready = bool(cs.get("ready"))
        if ready:
            state = "online"
        elif status.get("phase") == "Running":
            state = "starting"

    created = _parse_k8s_time(metadata.get("creationTimestamp"))
    now = now or datetime.now(timezone.utc)
    return KnightStatus(
        name=labels.get(INSTANCE_LABEL, ""),
        domain=labels.get(DOMAIN_LABEL, ""),
        status=state,
        ready=ready,
        restarts=restarts,
        age=format_age((now - created).total_seconds()) if created else "",
        image=containers[0].get("image", ""),
        labels=dict(labels),
    )


class FleetProvider:
    def __init__(self, kube: KubeClient | None, namespace: str = "roundtable"):
        self.kube = kube
        self.namespace = namespace

    def _require(self) -> KubeClient:
        if self.kube is None:
            raise ProviderUnavailable("Kubernetes not available")
        return self.kube

    @property
    def _pods_path(self) -> str:
        return f"/api/v1/namespaces/{self.namespace}/pods"

    async def _pods(self, selector: str) -> list[dict[str, Any]]:
        data = await self._require().get_json(self._pods_path, {"labelSelector": selector})
        return data.get("items") or []

    async def list_knights(self) -> list[KnightStatus]:
        now = datetime.now(timezone.utc)
        knights = []
        for pod in await self._pods(KNIGHT_SELECTOR):
            knight = pod_to_knight(pod, now)
            if knight is not None:
                knights.append(knight)
        return knights

    async def get_pod(self, name: str) -> dict[str, Any]:
        pods = await self._pods(f"{KNIGHT_SELECTOR},{INSTANCE_LABEL}={name}")
        if not pods:
            raise NotFound(f"knight {name}")
        return pods[0]

    async def logs(self, name: str, tail_lines: int = 100, timeout: float = 30.0) -> str:
        pod = await self.get_pod(name)
        pod_name = (pod.get("metadata") or {}).get("name", "")
        log.debug("fleet.logs", knight=name, pod=pod_name, tail=tail_lines)
        return await self._require().get_text(
            f"{self._pods_path}/{pod_name}/log",
            {"tailLines": tail_lines},
            timeout=timeout,
        )
