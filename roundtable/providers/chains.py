"""Chain provider — Chain custom resources (chains.ai.roundtable.io/v1alpha1)."""
from roundtable.core.chains import ChainRun, parse_chain_resource
from roundtable.providers.errors import ProviderUnavailable
from roundtable.providers.kube import KubeClient

CHAIN_GROUP = "ai.roundtable.io"
CHAIN_VERSION = "v1alpha1"
CHAIN_RESOURCE = "chains"


class ChainProvider:
    def __init__(self, kube: KubeClient | None, namespace: str = "roundtable"):
        self.kube = kube
        self.namespace = namespace

    @property
    def _path(self) -> str:
        return f"/apis/{CHAIN_GROUP}/{CHAIN_VERSION}/namespaces/{self.namespace}/{CHAIN_RESOURCE}"

    def _require(self) -> KubeClient:
        if self.kube is None:
            raise ProviderUnavailable("Kubernetes not available")
        return self.kube

    async def list_chains(self) -> list[ChainRun]:
        data = await self._require().get_json(self._path)
        return [parse_chain_resource(item) for item in data.get("items") or [] if isinstance(item, dict)]

    async def get_chain(self, name: str) -> ChainRun:
        """Raises NotFound when the chain does not exist."""
        return parse_chain_resource(await self._require().get_json(f"{self._path}/{name}"))
