import pytest
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config import ConfigurationError, TlsPolicy, resolve_listen_address, resolve_proxy, resolve_target, with_path


class TestConfig:
    def test_target_gets_root_path(self):
        assert resolve_target("http://localhost:8080") == "http://localhost:8080/"
        assert resolve_target("https://example.com/test/") == "https://example.com/test/"

    @pytest.mark.parametrize("url", ["", "ftp://example.com/", "http:///nohost", "http://host:notaport/"])
    def test_bad_targets(self, url):
        with pytest.raises(ConfigurationError):
            resolve_target(url)

    def test_proxy_must_be_plain_http(self):
        assert resolve_proxy(None) is None
        assert resolve_proxy("http://localhost:8888") == "http://localhost:8888"
        with pytest.raises(ConfigurationError):
            resolve_proxy("https://localhost:8888")

    def test_listen_address_default_ports(self):
        assert resolve_listen_address("http://0.0.0.0") == ("http", "0.0.0.0", 80)
        assert resolve_listen_address("https://localhost") == ("https", "localhost", 443)
        assert resolve_listen_address("http://localhost:8080/test").port == 8080

    def test_with_path(self):
        assert with_path("http://127.0.0.1:8080/x?y=1", "/test/") == "http://127.0.0.1:8080/test/"


def test_tls_policy_from_flag():
    assert TlsPolicy.from_flag(False) is TlsPolicy.VALIDATE
    assert TlsPolicy.from_flag(True) is TlsPolicy.NO_VALIDATE
    assert TlsPolicy.VALIDATE.verify
    assert not TlsPolicy.NO_VALIDATE.verify
