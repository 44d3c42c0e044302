"""
Protocol compliance tests.

Verifies that the PD and DM-master clients, the Kubernetes adapter and the
in-memory fakes implement the protocols from the operator-protocols package.
"""

import importlib.util
from unittest.mock import MagicMock

import httpx

from fakes import FakeDMClient, FakePDClient, FakePlatformClient
from operator_protocols import (
    Member,
    MembershipClientProtocol,
    PlatformClientProtocol,
    StoreClientProtocol,
)
from operator_tidb.dm_client import DMMasterClient
from operator_tidb.kube import KubePlatformClient
from operator_tidb.pd_client import PDClient


class TestMembershipClients:
    """Tests that membership clients implement MembershipClientProtocol."""

    def test_pd_client_is_membership_and_store_client(self):
        client = PDClient(http=httpx.AsyncClient(base_url="http://basic-pd:2379"))

        assert isinstance(client, MembershipClientProtocol)
        assert isinstance(client, StoreClientProtocol)

    def test_dm_client_is_membership_client(self):
        client = DMMasterClient(http=httpx.AsyncClient(base_url="http://basic-dm-master:8261"))

        assert isinstance(client, MembershipClientProtocol)
        assert not isinstance(client, StoreClientProtocol)

    def test_fakes_match_the_real_clients(self):
        assert isinstance(FakePDClient(), MembershipClientProtocol)
        assert isinstance(FakePDClient(), StoreClientProtocol)
        assert isinstance(FakeDMClient(), MembershipClientProtocol)
        assert not isinstance(FakeDMClient(), StoreClientProtocol)


class TestPlatformClients:
    """Tests that platform clients implement PlatformClientProtocol."""

    def test_kube_platform_client(self):
        assert isinstance(KubePlatformClient(MagicMock()), PlatformClientProtocol)

    def test_fake_platform_client(self):
        assert isinstance(FakePlatformClient(), PlatformClientProtocol)


class TestProtocolRuntimeCheckable:
    def test_unrelated_objects_fail_isinstance(self):
        assert not isinstance({}, PlatformClientProtocol)
        assert not isinstance("string", MembershipClientProtocol)
        assert not isinstance(123, StoreClientProtocol)


class TestTypesFromProtocols:
    def test_member_module(self):
        assert Member.__module__.startswith("operator_protocols")

    def test_member_defaults(self):
        member = Member(id="1", name="basic-pd-0")

        assert member.client_urls == []
        assert not member.alive


class TestPackageContents:
    def test_test_doubles_are_not_shipped(self):
        assert importlib.util.find_spec("operator_tidb.fake") is None

    def test_store_retirement_belongs_to_store_clients(self):
        assert hasattr(StoreClientProtocol, "delete_store")
        assert not hasattr(MembershipClientProtocol, "delete_store")
