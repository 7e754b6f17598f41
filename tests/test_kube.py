"""Unit tests for the kubernetes client wrapper."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import ProtocolError, ReadTimeoutError

from kafka_backup_operator.errors import KubernetesApiError
from kafka_backup_operator.kube import CONTENT_HASH_ANNOTATION, KubeClient, content_hash, label_selector

CONFIG_MAP = {
    'apiVersion': 'v1',
    'kind': 'ConfigMap',
    'metadata': {'name': 'nightly-backup-config', 'namespace': 'kafka'},
    'data': {'backup.yaml': 'mode: backup\n'},
}


@pytest.fixture
def client() -> KubeClient:
    kube = KubeClient(api_client=MagicMock())
    kube.core_v1 = MagicMock()
    kube.batch_v1 = MagicMock()
    kube.custom_objects = MagicMock()
    return kube


def existing(annotations):
    return SimpleNamespace(metadata=SimpleNamespace(annotations=annotations, resource_version='42'))


class TestHelpers:
    """Tests for module helpers."""

    def test_content_hash_ignores_own_annotation(self) -> None:
        annotated = {
            **CONFIG_MAP,
            'metadata': {**CONFIG_MAP['metadata'], 'annotations': {CONTENT_HASH_ANNOTATION: 'stale'}},
        }

        assert content_hash(annotated) == content_hash(CONFIG_MAP)

    def test_label_selector(self) -> None:
        assert label_selector({'b': '2', 'a': '1'}) == 'a=1,b=2'


class TestApply:
    """Tests for KubeClient.apply."""

    def test_creates_missing_object(self, client) -> None:
        client.core_v1.read_namespaced_config_map.side_effect = ApiException(status=404, reason='Not Found')

        assert client.apply(CONFIG_MAP)

        body = client.core_v1.create_namespaced_config_map.call_args.kwargs['body']
        assert body['metadata']['annotations'][CONTENT_HASH_ANNOTATION] == content_hash(CONFIG_MAP)

    def test_skips_unchanged_object(self, client) -> None:
        client.core_v1.read_namespaced_config_map.return_value = existing(
            {CONTENT_HASH_ANNOTATION: content_hash(CONFIG_MAP)},
        )

        assert not client.apply(CONFIG_MAP)
        client.core_v1.replace_namespaced_config_map.assert_not_called()

    def test_replaces_at_read_version(self, client) -> None:
        client.core_v1.read_namespaced_config_map.return_value = existing({CONTENT_HASH_ANNOTATION: 'old'})

        assert client.apply(CONFIG_MAP)

        body = client.core_v1.replace_namespaced_config_map.call_args.kwargs['body']
        assert body['metadata']['resourceVersion'] == '42'

    def test_translates_errors(self, client) -> None:
        client.core_v1.read_namespaced_config_map.side_effect = ApiException(status=403, reason='Forbidden')

        with pytest.raises(KubernetesApiError) as exc_info:
            client.apply(CONFIG_MAP)

        assert exc_info.value.status == 403


class TestDeleteAndRead:
    """Tests for deletion and reads."""

    def test_delete_tolerates_absence(self, client) -> None:
        client.batch_v1.delete_namespaced_cron_job.side_effect = ApiException(status=404, reason='Not Found')

        assert not client.delete('CronJob', 'kafka', 'nightly-scheduled')

    def test_delete_unsupported_kind(self, client) -> None:
        with pytest.raises(ValueError):
            client.delete('Deployment', 'kafka', 'x')

    def test_not_found_custom_object(self, client) -> None:
        client.custom_objects.get_namespaced_custom_object.side_effect = ApiException(status=404, reason='Not Found')

        with pytest.raises(KubernetesApiError) as exc_info:
            client.get_custom_object('kafkas', 'kafka', 'missing', group='kafka.strimzi.io', version='v1beta2')

        assert exc_info.value.not_found


class TestTransportErrors:
    """Tests for failures below the HTTP layer."""

    def test_connection_reset_on_read(self, client) -> None:
        client.custom_objects.get_namespaced_custom_object.side_effect = ProtocolError(
            'Connection aborted.', ConnectionResetError(104, 'Connection reset by peer'),
        )

        with pytest.raises(KubernetesApiError) as exc_info:
            client.get_custom_object('kafkas', 'kafka', 'my-cluster', group='kafka.strimzi.io', version='v1beta2')

        assert exc_info.value.status is None
        assert not exc_info.value.not_found

    def test_timeout_on_status_patch(self, client) -> None:
        client.custom_objects.patch_namespaced_custom_object_status.side_effect = ReadTimeoutError(
            None, '/apis', 'Read timed out.',
        )

        with pytest.raises(KubernetesApiError):
            client.patch_status('kafkabackups', 'kafka', 'nightly', {'observedGeneration': 1})

    def test_reset_during_apply_is_not_a_missing_object(self, client) -> None:
        """Should not try to create an object whose read failed in transport."""
        client.core_v1.read_namespaced_config_map.side_effect = ProtocolError('Connection aborted.')

        with pytest.raises(KubernetesApiError):
            client.apply(CONFIG_MAP)

        client.core_v1.create_namespaced_config_map.assert_not_called()

    def test_reset_during_delete(self, client) -> None:
        client.batch_v1.delete_namespaced_job.side_effect = ProtocolError('Connection aborted.')

        with pytest.raises(KubernetesApiError):
            client.delete('Job', 'kafka', 'nightly-20260213-020000')
