import base64
import os
import stat

import pytest
import yaml

import kadm.errors
import kadm.kubernetes.kubeconfig

IDENTITY = kadm.kubernetes.kubeconfig.ClientIdentity(
    cluster_name="kubernetes",
    server_url="https://10.0.0.1:6443",
    ca_certificate=b"CA PEM",
    client_key=b"KEY PEM",
    client_certificate=b"CERT PEM",
    user_name="kubelet-node-1",
    context_name="kubelet-node-1@kubernetes",
)


class TestBuilders:
    def test_basic_configuration(self):
        configuration = kadm.kubernetes.kubeconfig.create_basic_client_configuration(
            "kubernetes", "https://10.0.0.1:6443", b"CA PEM"
        )
        cluster = configuration["clusters"][0]
        assert cluster["name"] == "kubernetes"
        assert cluster["cluster"]["server"] == "https://10.0.0.1:6443"
        assert base64.b64decode(cluster["cluster"]["certificate-authority-data"]) == b"CA PEM"
        assert configuration["users"] == []

    def test_token_configuration_does_not_mutate_input(self):
        basic = kadm.kubernetes.kubeconfig.create_basic_client_configuration(
            "kubernetes", "https://10.0.0.1:6443", b"CA PEM"
        )
        configuration = kadm.kubernetes.kubeconfig.make_client_configuration_with_token(
            basic, cluster_name="kubernetes", user_name="kubelet-node-1", token="a1b2c3.0011223344556677"
        )

        assert basic["users"] == []
        assert basic["current-context"] == ""
        assert configuration["users"] == [
            {"name": "kubelet-node-1", "user": {"token": "a1b2c3.0011223344556677"}}
        ]
        assert configuration["contexts"] == [
            {
                "name": "kubelet-node-1@kubernetes",
                "context": {"cluster": "kubernetes", "user": "kubelet-node-1"},
            }
        ]
        assert configuration["current-context"] == "kubelet-node-1@kubernetes"

    def test_identity_round_trip(self):
        configuration = kadm.kubernetes.kubeconfig.client_configuration_from_identity(IDENTITY)
        user = configuration["users"][0]["user"]
        assert base64.b64decode(user["client-key-data"]) == b"KEY PEM"
        assert base64.b64decode(user["client-certificate-data"]) == b"CERT PEM"
        assert kadm.kubernetes.kubeconfig.identity_from_client_configuration(configuration) == IDENTITY

    def test_token_configuration_is_not_an_identity(self):
        configuration = kadm.kubernetes.kubeconfig.make_client_configuration_with_token(
            kadm.kubernetes.kubeconfig.create_basic_client_configuration(
                "kubernetes", "https://10.0.0.1:6443", b"CA PEM"
            ),
            cluster_name="kubernetes",
            user_name="kubelet-node-1",
            token="a1b2c3.0011223344556677",
        )
        with pytest.raises(kadm.errors.ConfigurationError):
            kadm.kubernetes.kubeconfig.identity_from_client_configuration(configuration)


class TestFiles:
    def test_write_and_load(self, tmp_path):
        path = tmp_path / "kubelet.conf"
        configuration = kadm.kubernetes.kubeconfig.client_configuration_from_identity(IDENTITY)
        kadm.kubernetes.kubeconfig.write_client_configuration(path, configuration)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert yaml.safe_load(path.read_text())["kind"] == "Config"
        assert kadm.kubernetes.kubeconfig.load_client_configuration(path) == configuration

    def test_exclusive_write_refuses_existing_file(self, tmp_path):
        path = tmp_path / "kubelet.conf"
        path.write_text("previous")
        configuration = kadm.kubernetes.kubeconfig.client_configuration_from_identity(IDENTITY)

        with pytest.raises(kadm.errors.AssetIOError):
            kadm.kubernetes.kubeconfig.write_client_configuration(
                path, configuration, exclusive=True
            )
        assert path.read_text() == "previous"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(kadm.errors.AssetIOError):
            kadm.kubernetes.kubeconfig.load_client_configuration(tmp_path / "missing.conf")

    def test_load_not_a_configuration(self, tmp_path):
        path = tmp_path / "kubelet.conf"
        path.write_text("just a string")
        with pytest.raises(kadm.errors.ConfigurationError):
            kadm.kubernetes.kubeconfig.load_client_configuration(path)
