"""End-to-end tests for CertManager against the in-process CA."""

import asyncio
import dataclasses
import logging
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from piacme.errors import AgreementRequiredError, ConfigValidationError
from piacme.manager import CertManager
from piacme.models import CertState
from piacme.utils.config import Config

from .conftest import FakeAcmeServer


def _manager(cfg: Config, server: FakeAcmeServer, fast_polling: dict) -> CertManager:
	return CertManager(cfg, transport=server.transport, client_options=fast_polling)


class TestInit:
	def test_merge_overrides(self, cfg: Config) -> None:
		manager = CertManager(cfg)
		merged = manager.init({"renewDays": 30, "domains": ["example.org"]})
		assert merged is manager.cfg
		assert manager.cfg.renew_days == 30
		assert manager.cfg.domains == ("example.org",)
		assert manager.cfg.full_chain_file == cfg.full_chain_file

	def test_invalid_overrides(self, cfg: Config) -> None:
		with pytest.raises(ConfigValidationError):
			CertManager(cfg).init({"maintainer": "not-an-email"})


class TestGetCert:
	@pytest.mark.asyncio
	async def test_first_run_issues_certificate(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		manager = _manager(cfg, acme_server, fast_polling)
		on_renew = Mock()

		assert await manager.get_cert(on_renew=on_renew) is True

		for path in (cfg.account_key_file, cfg.server_key_file, cfg.account_file, cfg.full_chain_file):
			assert path.exists(), path
		on_renew.assert_called_once_with()
		status = manager.check_status()
		assert status.reason is CertState.OK
		assert status.remaining_days == pytest.approx(90, abs=0.1)

	@pytest.mark.asyncio
	async def test_valid_certificate_is_not_renewed(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		manager = _manager(cfg, acme_server, fast_polling)
		assert await manager.get_cert() is True
		orders = len(acme_server.orders)

		on_renew = Mock()
		assert await manager.get_cert(on_renew=on_renew) is True
		assert len(acme_server.orders) == orders
		on_renew.assert_not_called()

	@pytest.mark.asyncio
	async def test_short_lifetime_renews_every_time(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		# CA issues 5 day certificates while renew_days is 10
		acme_server.lifetime_days = 5
		manager = _manager(cfg, acme_server, fast_polling)

		assert await manager.get_cert() is False
		assert cfg.full_chain_file.exists()
		assert manager.check_status().remaining_days == pytest.approx(5, abs=0.1)

		assert await manager.renewal_cycle() is True
		assert len(acme_server.orders) == 2

	@pytest.mark.asyncio
	async def test_existing_keys_and_account_reused(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		assert await _manager(cfg, acme_server, fast_polling).get_cert() is True
		account_key = cfg.account_key_file.read_bytes()
		server_key = cfg.server_key_file.read_bytes()
		account = cfg.account_file.read_text()
		cfg.full_chain_file.unlink()

		assert await _manager(cfg, acme_server, fast_polling).get_cert() is True
		assert cfg.account_key_file.read_bytes() == account_key
		assert cfg.server_key_file.read_bytes() == server_key
		assert cfg.account_file.read_text() == account
		assert len(acme_server.accounts) == 1

	@pytest.mark.asyncio
	async def test_failed_order_returns_false(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		acme_server.fail_validation = True
		on_renew = Mock()
		assert await _manager(cfg, acme_server, fast_polling).get_cert(on_renew=on_renew) is False
		assert not cfg.full_chain_file.exists()
		on_renew.assert_not_called()

	@pytest.mark.asyncio
	async def test_network_error_returns_false(self, cfg: Config, fast_polling: dict) -> None:
		def unreachable(request: httpx.Request) -> httpx.Response:
			raise httpx.ConnectError("connection refused", request=request)

		manager = CertManager(cfg, transport=httpx.MockTransport(unreachable), client_options=fast_polling)
		assert await manager.get_cert() is False

	@pytest.mark.asyncio
	async def test_agreement_required_propagates(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		acme_server.new_order_problem = {"status": 403, "kind": "agreementRequired", "detail": "new terms"}
		with pytest.raises(AgreementRequiredError):
			await _manager(cfg, acme_server, fast_polling).get_cert()

	@pytest.mark.asyncio
	async def test_no_domains(self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict) -> None:
		manager = _manager(dataclasses.replace(cfg, domains=()), acme_server, fast_polling)
		assert await manager.get_cert() is False
		assert await manager.create_keys() is False
		assert acme_server.requests == []
		assert not cfg.account_key_file.exists()

	@pytest.mark.asyncio
	async def test_concurrent_calls_are_single_flight(self, cfg: Config) -> None:
		manager = CertManager(cfg)
		release = asyncio.Event()

		async def slow_ensure() -> tuple[bool, bool]:
			await release.wait()
			return True, True

		with patch.object(manager, "_ensure_cert", AsyncMock(side_effect=slow_ensure)) as ensure:
			first = asyncio.create_task(manager.get_cert())
			await asyncio.sleep(0)
			assert await manager.get_cert() is False
			assert await manager.renewal_cycle() is False
			release.set()
			assert await first is True
		assert ensure.await_count == 1

	@pytest.mark.asyncio
	async def test_maintainer_sent_in_user_agent(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		cfg = dataclasses.replace(cfg, maintainer="ops@example.org")
		assert await _manager(cfg, acme_server, fast_polling).get_cert() is True
		assert acme_server.user_agents
		assert all("mailto:ops@example.org" in agent for agent in acme_server.user_agents)

	@pytest.mark.asyncio
	async def test_summary_logged_once(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict, caplog: pytest.LogCaptureFixture,
	) -> None:
		manager = _manager(cfg, acme_server, fast_polling)
		with caplog.at_level(logging.INFO, logger="piacme.manager"):
			assert await manager.get_cert() is True
			assert await manager.get_cert() is True
		messages = [r.getMessage() for r in caplog.records if r.name == "piacme.manager"]
		subjects = [m for m in messages if m.startswith("CERT subject: example.com issuer:")]
		assert len(subjects) == 1
		assert any(m.startswith("ACME account contact:") and "created: 2026-10-19T08:00:00" in m for m in messages)
		assert "ACME server key: RSA account key: EC" in messages

	def test_tls_files(self, cfg: Config) -> None:
		files = CertManager(cfg).tls_files
		assert files.key == cfg.server_key_file
		assert files.crt == cfg.full_chain_file


class TestCreateCert:
	@pytest.mark.asyncio
	async def test_existing_chain_loaded_unless_forced(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		manager = _manager(cfg, acme_server, fast_polling)
		assert await manager.create_keys() is True
		assert await manager.create_cert() is True
		assert len(acme_server.orders) == 1

		assert await manager.create_cert() is True
		assert len(acme_server.orders) == 1

		assert await manager.create_cert(force=True) is True
		assert len(acme_server.orders) == 2

	@pytest.mark.asyncio
	async def test_create_cert_loads_keys_on_demand(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict,
	) -> None:
		manager = _manager(cfg, acme_server, fast_polling)
		assert await manager.create_cert() is True
		assert manager.account is not None
		assert cfg.server_key_file.exists()


class TestMonitor:
	@pytest.mark.asyncio
	async def test_monitor_renews_and_notifies(self, cfg: Config) -> None:
		manager = CertManager(dataclasses.replace(cfg, monitor_interval=1))
		on_renew = Mock()
		with patch.object(manager, "_ensure_cert", AsyncMock(return_value=(True, True))):
			scheduler = await manager.monitor_cert(on_renew=on_renew)
			assert scheduler.interval_seconds == 60
			assert scheduler.is_running
			assert await manager.monitor_cert() is scheduler
			assert await scheduler.run_once() is True
			await manager.stop_monitor()
		on_renew.assert_called_once_with()
		assert not scheduler.is_running
		assert manager.scheduler is None


class TestConnection:
	@pytest.mark.asyncio
	async def test_probe_reaches_local_responder(self, cfg: Config) -> None:
		assert await CertManager(cfg).test_connection("127.0.0.1", timeout=2.0) is True

	@pytest.mark.asyncio
	async def test_no_host(self, cfg: Config) -> None:
		manager = CertManager(dataclasses.replace(cfg, domains=()))
		assert await manager.test_connection() is False


class TestFacade:
	@pytest.mark.asyncio
	async def test_module_functions_use_default_manager(
		self, cfg: Config, acme_server: FakeAcmeServer, fast_polling: dict, monkeypatch: pytest.MonkeyPatch,
	) -> None:
		import piacme
		from piacme import manager as manager_module

		monkeypatch.setattr(manager_module, "_default_manager", _manager(cfg, acme_server, fast_polling))

		assert piacme.default_manager() is manager_module._default_manager
		assert piacme.init({"renewDays": 3}).renew_days == 3
		assert piacme.check_cert() is False
		assert await piacme.get_cert() is True
		assert piacme.check_cert() is True
		assert piacme.parse_cert().errors() == {}
