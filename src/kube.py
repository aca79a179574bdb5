"""
Cluster Client - Kind-keyed access to the Kubernetes API.

Wraps ``kubernetes_asyncio`` behind a closed table mapping each kind the
operator touches to the API group that serves it. Objects go in and come
out as JSON-shaped dicts, so the rest of the operator never handles the
generated model classes.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.api_client import ApiClient
from kubernetes_asyncio.client.exceptions import ApiException

from errors import is_conflict, is_not_found

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


@dataclass(frozen=True)
class KindSpec:
    """How one kind is served by the API."""

    kind: str
    api_version: str
    namespaced: bool
    # Typed API class name and method suffix, or a plural for CustomObjectsApi
    api: Optional[str] = None
    suffix: Optional[str] = None
    plural: Optional[str] = None

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def custom(self) -> bool:
        return self.plural is not None


KINDS: Dict[str, KindSpec] = {
    spec.kind: spec
    for spec in (
        KindSpec("Namespace", "v1", False, "CoreV1Api", "namespace"),
        KindSpec("ServiceAccount", "v1", True, "CoreV1Api", "service_account"),
        KindSpec("Secret", "v1", True, "CoreV1Api", "secret"),
        KindSpec("ConfigMap", "v1", True, "CoreV1Api", "config_map"),
        KindSpec("Service", "v1", True, "CoreV1Api", "service"),
        KindSpec("Event", "v1", True, "CoreV1Api", "event"),
        KindSpec("Deployment", "apps/v1", True, "AppsV1Api", "deployment"),
        KindSpec(
            "ClusterRole", "rbac.authorization.k8s.io/v1", False,
            "RbacAuthorizationV1Api", "cluster_role",
        ),
        KindSpec(
            "ClusterRoleBinding", "rbac.authorization.k8s.io/v1", False,
            "RbacAuthorizationV1Api", "cluster_role_binding",
        ),
        KindSpec(
            "Role", "rbac.authorization.k8s.io/v1", True,
            "RbacAuthorizationV1Api", "role",
        ),
        KindSpec(
            "RoleBinding", "rbac.authorization.k8s.io/v1", True,
            "RbacAuthorizationV1Api", "role_binding",
        ),
        KindSpec(
            "NetworkPolicy", "networking.k8s.io/v1", True,
            "NetworkingV1Api", "network_policy",
        ),
        KindSpec(
            "ValidatingWebhookConfiguration", "admissionregistration.k8s.io/v1", False,
            "AdmissionregistrationV1Api", "validating_webhook_configuration",
        ),
        KindSpec(
            "CustomResourceDefinition", "apiextensions.k8s.io/v1", False,
            "ApiextensionsV1Api", "custom_resource_definition",
        ),
        KindSpec("Certificate", "cert-manager.io/v1", True, plural="certificates"),
        KindSpec("Issuer", "cert-manager.io/v1", True, plural="issuers"),
        KindSpec("ClusterIssuer", "cert-manager.io/v1", False, plural="clusterissuers"),
        KindSpec(
            "ExternalSecretsConfig", "operator.openshift.io/v1alpha1", False,
            plural="externalsecretsconfigs",
        ),
        KindSpec(
            "ExternalSecretsManager", "operator.openshift.io/v1alpha1", False,
            plural="externalsecretsmanagers",
        ),
    )
}


def kind_spec(kind: str) -> KindSpec:
    """Look up a kind; an unknown kind is a programming error."""
    try:
        return KINDS[kind]
    except KeyError:
        raise ValueError(f"unsupported object kind: {kind}")


def object_key(obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    metadata = obj.get("metadata") or {}
    return metadata.get("name", ""), metadata.get("namespace") or None


def display_name(obj: Dict[str, Any]) -> str:
    """``namespace/name`` for namespaced objects, ``name`` otherwise."""
    name, namespace = object_key(obj)
    return f"{namespace}/{name}" if namespace else name


class KubeClient:
    """
    Async client for the kinds in KINDS.

    Every call raises ``ApiException`` on failure; callers classify it.
    Calls other than watches are bounded by ``request_timeout`` seconds.
    """

    def __init__(
        self,
        api_client: Optional[ApiClient] = None,
        update_retry_attempts: int = 5,
        update_retry_backoff: float = 0.01,
        request_timeout: Optional[float] = None,
    ):
        self._api_client = api_client
        self._apis: Dict[str, Any] = {}
        self.update_retry_attempts = update_retry_attempts
        self.update_retry_backoff = update_retry_backoff
        self.request_timeout = request_timeout

    async def connect(self, kubeconfig: Optional[str] = None) -> None:
        """Load cluster credentials and open the shared API client."""
        if self._api_client is not None:
            return
        if kubeconfig:
            await config.load_kube_config(config_file=kubeconfig)
            logger.info(f"Loaded kubeconfig from {kubeconfig}")
        else:
            config.load_incluster_config()
            logger.info("Loaded in-cluster configuration")
        self._api_client = ApiClient()

    async def close(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
            self._apis.clear()

    @property
    def api_client(self) -> ApiClient:
        if self._api_client is None:
            raise RuntimeError("KubeClient is not connected")
        return self._api_client

    def _api(self, name: str) -> Any:
        if name not in self._apis:
            self._apis[name] = getattr(client, name)(self.api_client)
        return self._apis[name]

    def _options(self, **kwargs) -> Dict[str, Any]:
        """Keyword arguments for one API call, with the request timeout applied."""
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        return kwargs

    def _to_dict(self, spec: KindSpec, result: Any) -> Dict[str, Any]:
        if isinstance(result, dict):
            data = result
        else:
            data = self.api_client.sanitize_for_serialization(result)
        data.setdefault("apiVersion", spec.api_version)
        data.setdefault("kind", spec.kind)
        return data

    def _typed(self, spec: KindSpec, verb: str, namespace: Optional[str]):
        """Resolve e.g. ``read_namespaced_service`` on CoreV1Api."""
        scope = "namespaced_" if spec.namespaced and namespace is not None else ""
        return getattr(self._api(spec.api), f"{verb}_{scope}{spec.suffix}")

    # Reads

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        spec = kind_spec(kind)
        opts = self._options()
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced:
                result = await api.get_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name, **opts
                )
            else:
                result = await api.get_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, **opts
                )
        elif spec.namespaced:
            result = await self._typed(spec, "read", namespace)(name, namespace, **opts)
        else:
            result = await self._typed(spec, "read", None)(name, **opts)
        return self._to_dict(spec, result)

    async def exists(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Fetch an object, mapping not found to ``(False, None)``."""
        try:
            return True, await self.get(kind, name, namespace)
        except ApiException as e:
            if is_not_found(e):
                return False, None
            raise

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        spec = kind_spec(kind)
        kwargs = self._options(**({"label_selector": label_selector} if label_selector else {}))
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced and namespace is not None:
                result = await api.list_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, **kwargs
                )
            else:
                result = await api.list_cluster_custom_object(
                    spec.group, spec.version, spec.plural, **kwargs
                )
            items = result.get("items", [])
        else:
            if spec.namespaced and namespace is not None:
                result = await self._typed(spec, "list", namespace)(namespace, **kwargs)
            elif spec.namespaced:
                fn = getattr(self._api(spec.api), f"list_{spec.suffix}_for_all_namespaces")
                result = await fn(**kwargs)
            else:
                result = await self._typed(spec, "list", None)(**kwargs)
            items = self.api_client.sanitize_for_serialization(result).get("items", [])
        return [self._to_dict(spec, item) for item in items]

    # Writes

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        spec = kind_spec(obj["kind"])
        name, namespace = object_key(obj)
        opts = self._options()
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced:
                result = await api.create_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, obj, **opts
                )
            else:
                result = await api.create_cluster_custom_object(
                    spec.group, spec.version, spec.plural, obj, **opts
                )
        elif spec.namespaced:
            result = await self._typed(spec, "create", namespace)(namespace, obj, **opts)
        else:
            result = await self._typed(spec, "create", None)(obj, **opts)
        return self._to_dict(spec, result)

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object. ``metadata.resourceVersion`` guards the write."""
        spec = kind_spec(obj["kind"])
        name, namespace = object_key(obj)
        opts = self._options()
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced:
                result = await api.replace_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name, obj, **opts
                )
            else:
                result = await api.replace_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, obj, **opts
                )
        elif spec.namespaced:
            result = await self._typed(spec, "replace", namespace)(name, namespace, obj, **opts)
        else:
            result = await self._typed(spec, "replace", None)(name, obj, **opts)
        return self._to_dict(spec, result)

    async def update_with_retry(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace an object, retrying on write conflicts.

        Each attempt reads the live object to pick up its resource version,
        then replaces it with ``obj``. Only conflicts are retried, a bounded
        number of times with exponential backoff.
        """
        name, namespace = object_key(obj)
        last_error: Optional[ApiException] = None
        for attempt in range(self.update_retry_attempts):
            current = await self.get(obj["kind"], name, namespace)
            desired = copy.deepcopy(obj)
            desired.setdefault("metadata", {})["resourceVersion"] = (
                current.get("metadata") or {}
            ).get("resourceVersion")
            try:
                return await self.update(desired)
            except ApiException as e:
                if not is_conflict(e):
                    raise
                last_error = e
                logger.debug(
                    f"Conflict updating {obj['kind']} {display_name(obj)}, "
                    f"attempt {attempt + 1}/{self.update_retry_attempts}"
                )
                await asyncio.sleep(self.update_retry_backoff * (2**attempt))
        raise last_error

    async def mutate_with_retry(
        self,
        kind: str,
        name: str,
        mutate: Callable[[Dict[str, Any]], bool],
        namespace: Optional[str] = None,
        status: bool = False,
    ) -> Dict[str, Any]:
        """
        Read-modify-write an object, retrying on write conflicts.

        ``mutate`` edits the freshly read object in place and returns
        whether anything changed. Nothing is written when it returns False.

        Args:
            kind: Object kind.
            name: Object name.
            mutate: Callback applied to the live object on every attempt.
            namespace: Namespace for namespaced kinds.
            status: Write the status subresource instead of the object.

        Returns:
            The object as written, or as read when no write was needed.
        """
        last_error: Optional[ApiException] = None
        for attempt in range(self.update_retry_attempts):
            current = await self.get(kind, name, namespace)
            if not mutate(current):
                return current
            try:
                if status:
                    return await self.update_status(current)
                return await self.update(current)
            except ApiException as e:
                if not is_conflict(e):
                    raise
                last_error = e
                logger.debug(
                    f"Conflict writing {kind} {name}, "
                    f"attempt {attempt + 1}/{self.update_retry_attempts}"
                )
                await asyncio.sleep(self.update_retry_backoff * (2**attempt))
        raise last_error

    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Write the status subresource of a custom resource."""
        spec = kind_spec(obj["kind"])
        if not spec.custom:
            raise ValueError(f"status updates are not supported for {spec.kind}")
        name, namespace = object_key(obj)
        api = self._api("CustomObjectsApi")
        opts = self._options()
        if spec.namespaced:
            result = await api.replace_namespaced_custom_object_status(
                spec.group, spec.version, namespace, spec.plural, name, obj, **opts
            )
        else:
            result = await api.replace_cluster_custom_object_status(
                spec.group, spec.version, spec.plural, name, obj, **opts
            )
        return self._to_dict(spec, result)

    async def patch(
        self,
        kind: str,
        name: str,
        body: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a JSON merge patch."""
        spec = kind_spec(kind)
        opts = self._options()
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced:
                result = await api.patch_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name, body, **opts
                )
            else:
                result = await api.patch_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, body, **opts
                )
        elif spec.namespaced:
            result = await self._typed(spec, "patch", namespace)(
                name, namespace, body, _content_type=MERGE_PATCH, **opts
            )
        else:
            result = await self._typed(spec, "patch", None)(
                name, body, _content_type=MERGE_PATCH, **opts
            )
        return self._to_dict(spec, result)

    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        spec = kind_spec(kind)
        opts = self._options()
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced:
                await api.delete_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name, **opts
                )
            else:
                await api.delete_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, **opts
                )
        elif spec.namespaced:
            await self._typed(spec, "delete", namespace)(name, namespace, **opts)
        else:
            await self._typed(spec, "delete", None)(name, **opts)

    # Discovery and watches

    async def discover(self, group_version: str) -> List[str]:
        """
        List resource plurals served under a group version.

        Returns an empty list when the group version is not served.
        """
        group, _, version = group_version.rpartition("/")
        try:
            result = await self._api("CustomObjectsApi").get_api_resources(
                group, version, **self._options()
            )
        except ApiException as e:
            if is_not_found(e):
                return []
            raise
        if result is None:
            return []
        data = self.api_client.sanitize_for_serialization(result)
        return [r.get("name", "") for r in data.get("resources", [])]

    async def watch(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Stream ``(event_type, object)`` pairs for a kind."""
        spec = kind_spec(kind)
        kwargs: Dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        args: List[Any] = []
        if spec.custom:
            api = self._api("CustomObjectsApi")
            if spec.namespaced and namespace is not None:
                fn = api.list_namespaced_custom_object
                args = [spec.group, spec.version, namespace, spec.plural]
            else:
                fn = api.list_cluster_custom_object
                args = [spec.group, spec.version, spec.plural]
        elif spec.namespaced and namespace is not None:
            fn = self._typed(spec, "list", namespace)
            args = [namespace]
        elif spec.namespaced:
            fn = getattr(self._api(spec.api), f"list_{spec.suffix}_for_all_namespaces")
        else:
            fn = self._typed(spec, "list", None)

        w = watch.Watch()
        try:
            async for event in w.stream(fn, *args, **kwargs):
                raw = event.get("raw_object") or event.get("object")
                yield event.get("type", ""), self._to_dict(spec, copy.deepcopy(raw))
        finally:
            w.stop()
