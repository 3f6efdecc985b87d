from pytest import raises

from betterport import PortConfig


class TestPortConfig:
    def test_defaults(self):
        config = PortConfig()
        assert config.auto_open
        assert config.keep_open
        assert config.close_on_no_data
        assert config.disconnect_timeout == 5
        assert config.reconnect_delay == 1
        assert config.retry_delay == 5
        assert config.send_on_open is None
        assert config.write_queue_size == 64

    def test_from_dict_with_attribute_names(self):
        config = PortConfig.from_dict({"keep_open": False, "retry_delay": 2})
        assert not config.keep_open
        assert config.retry_delay == 2

    def test_from_dict_with_camel_case_names(self):
        config = PortConfig.from_dict(
            {
                "autoOpen": False,
                "keepOpen": False,
                "disconnectTimeoutMS": 2500,
                "reconnectDelayMS": 100,
                "retryDelayMS": 3000,
                "sendOnOpen": "AT\r\n",
            }
        )
        assert not config.auto_open
        assert not config.keep_open
        assert config.disconnect_timeout == 2.5
        assert config.reconnect_delay == 0.1
        assert config.retry_delay == 3
        assert config.send_on_open == b"AT\r\n"

    def test_from_dict_with_keywords(self):
        config = PortConfig.from_dict(None, assumeDisconnectMS=1000, auto_open=False)
        assert config.disconnect_timeout == 1
        assert not config.auto_open

    def test_unknown_option(self):
        with raises(ValueError, match="baudRate"):
            PortConfig.from_dict({"baudRate": 9600})

    def test_validation(self):
        with raises(ValueError):
            PortConfig(disconnect_timeout=0)
        with raises(ValueError):
            PortConfig(reconnect_delay=-1)
        with raises(ValueError):
            PortConfig(write_queue_size=0)

    def test_evolve(self):
        config = PortConfig()
        modified = config.evolve(keep_open=False)
        assert config.keep_open
        assert not modified.keep_open
        assert modified.retry_delay == config.retry_delay
