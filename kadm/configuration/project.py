#!/usr/bin/env python3
#
# This module contains static configuration for the project. This provides an
# easy place to track values that aren't user-configurable but need to be
# synchronized across the project.

import dataclasses


@dataclasses.dataclass(frozen=True)
class ProjectConfiguration:
    "Struct that contains global non-configurable settings"
    # Common name of the root certificate authority
    certificate_authority_name = "kubernetes"
    # In-cluster service which fronts the API server
    apiserver_service_name = "kubernetes"
    apiserver_service_namespace = "default"
    # Common names of the control plane identities
    apiserver_common_name = "kube-apiserver"
    admin_common_name = "kubernetes-admin"
    admin_organization = "system:masters"
    # Conventional identity of a node's client certificate
    # https://kubernetes.io/docs/reference/access-authn-authz/node/
    node_user_prefix = "system:node:"
    node_organization = "system:nodes"
    # Prefix of the name under which a joining kubelet authenticates
    kubelet_user_prefix = "kubelet-"
    # Signing request resource of the approval authority
    certificates_api_path = "/apis/certificates.k8s.io/v1/certificatesigningrequests"
    signer_name = "kubernetes.io/kube-apiserver-client-kubelet"
    signing_request_name_prefix = "csr-"
    # Usages requested for a node client certificate
    client_usages = (
        "digital signature",
        "key encipherment",
        "client auth",
    )
