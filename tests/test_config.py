"""Tests for profiles and the config dir."""

import json
from types import SimpleNamespace

import pytest

from tritoncloud.config import ENV_PROFILE_NAME, ConfigStore, Profile
from tritoncloud.exceptions import ConfigError, NotFound, UsageError

from .conftest import KEY_ID, URL

MD5_KEY_ID = 'de:ad:be:ef:de:ad:be:ef:de:ad:be:ef:de:ad:be:ef'


@pytest.fixture
def store(tmp_path):
    return ConfigStore(config_dir=tmp_path / '.triton', env={})


def make_profile(name='east', **kwargs):
    fields = dict(url=URL, account='alice', key_id=KEY_ID)
    fields.update(kwargs)
    return Profile(name=name, **fields)


class TestProfile:
    def test_dict_round_trip_keeps_unknown_keys(self):
        profile = Profile.from_dict({'url': URL, 'account': 'alice', 'keyId': KEY_ID, 'color': 'blue'}, name='east')
        assert profile.key_id == KEY_ID
        assert profile.extra == {'color': 'blue'}
        assert profile.to_dict()['color'] == 'blue'
        assert 'insecure' not in profile.to_dict()

    def test_insecure_from_string(self):
        assert Profile.from_dict({'insecure': 'true'}, name='x').insecure is True
        with pytest.raises(ConfigError):
            Profile.from_dict({'insecure': 'sometimes'}, name='x')

    def test_dcs_from_comma_list(self):
        profile = Profile.from_dict({'dcs': 'https://a.example.com, https://b.example.com'}, name='x')
        assert profile.dcs == ['https://a.example.com', 'https://b.example.com']

    def test_validate(self):
        make_profile().validate()
        make_profile(key_id=MD5_KEY_ID).validate()
        with pytest.raises(ConfigError, match='missing'):
            make_profile(account=None).validate()
        with pytest.raises(ConfigError, match='keyId'):
            make_profile(key_id='not-a-fingerprint').validate()
        with pytest.raises(ConfigError, match='url'):
            make_profile(url='us-east-1.example.com').validate()
        with pytest.raises(ConfigError, match='name'):
            make_profile(name='no spaces').validate()

    def test_text_form(self):
        profile = make_profile(insecure=True)
        text = profile.to_text()
        assert 'insecure=true' in text
        assert Profile.from_text(text + "# a comment\n", name='east') == profile

    def test_text_form_rejects_garbage(self):
        with pytest.raises(ConfigError, match='line 2'):
            Profile.from_text(f"url={URL}\nwhat is this\n", name='east')


class TestConfigStore:
    def test_save_and_get(self, store):
        store.save(make_profile())
        assert store.names() == ['east']
        saved = json.loads((store.profiles_dir / 'east.json').read_text())
        assert saved == {'url': URL, 'account': 'alice', 'keyId': KEY_ID}
        assert store.get('east') == make_profile()

    def test_get_missing(self, store):
        with pytest.raises(NotFound):
            store.get('west')

    def test_cannot_save_env(self, store):
        with pytest.raises(UsageError):
            store.save(make_profile(name=ENV_PROFILE_NAME))

    def test_current_defaults_to_env(self, store):
        assert store.current_name() == ENV_PROFILE_NAME

    def test_current_from_environment(self, tmp_path):
        store = ConfigStore(config_dir=tmp_path, env={'TRITON_PROFILE': 'west'})
        assert store.current_name() == 'west'

    def test_set_current_and_back(self, store):
        store.save(make_profile('east'))
        store.save(make_profile('west'))
        store.set_current('east')
        store.set_current('west')
        assert store.load_config() == {'profile': 'west', 'oldProfile': 'east'}
        assert store.set_current('-') == 'east'
        assert store.current_name() == 'east'

    def test_set_current_needs_old_profile(self, store):
        with pytest.raises(ConfigError):
            store.set_current('-')

    def test_delete_current_falls_back_to_env(self, store):
        store.save(make_profile('east'), set_current=True)
        assert store.delete('east')
        assert store.current_name() == ENV_PROFILE_NAME
        assert store.names() == []

    def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            store.delete('west')
        assert store.delete('west', force=True) is False

    def test_env_profile(self, tmp_path):
        env = {'SDC_URL': URL, 'TRITON_ACCOUNT': 'bob', 'TRITON_KEY_ID': KEY_ID, 'TRITON_TLS_INSECURE': '1'}
        store = ConfigStore(config_dir=tmp_path, env=env)
        profile = store.get(ENV_PROFILE_NAME)
        assert (profile.url, profile.account, profile.insecure) == (URL, 'bob', True)
        assert [p.name for p in store.list()] == [ENV_PROFILE_NAME]

    def test_load_precedence(self, tmp_path):
        store = ConfigStore(config_dir=tmp_path, env={'TRITON_ACCOUNT': 'from-env'})
        store.save(make_profile('east', user='ops'))
        config = store.load('east', overrides={'account': None, 'act_as_account': 'carol'})
        assert config.profile.account == 'from-env'
        assert config.profile.act_as_account == 'carol'
        assert config.profile.user == 'ops'
        config = store.load('east', overrides={'account': 'from-flag'})
        assert config.profile.account == 'from-flag'
        assert config.cache_dir == tmp_path / 'cache'

    def test_load_validates(self, store):
        store.save(make_profile('east'))
        with pytest.raises(ConfigError):
            store.load('east', overrides={'url': 'ftp://nowhere'})

    def test_plain_http_is_refused(self, store):
        with pytest.raises(ConfigError, match='https'):
            store.save(make_profile('east', url='http://us-east-1.api.example.com'))

    def test_env_can_turn_insecure_off(self, tmp_path):
        ConfigStore(config_dir=tmp_path, env={}).save(make_profile('east', insecure=True))
        assert ConfigStore(config_dir=tmp_path, env={}).load('east').profile.insecure is True
        store = ConfigStore(config_dir=tmp_path, env={'TRITON_TLS_INSECURE': '0'})
        assert store.load('east').profile.insecure is False

    def test_empty_env_var_is_unset(self, tmp_path):
        ConfigStore(config_dir=tmp_path, env={}).save(make_profile('east', insecure=True))
        store = ConfigStore(config_dir=tmp_path, env={'TRITON_TLS_INSECURE': '', 'TRITON_ACCOUNT': ''})
        profile = store.load('east').profile
        assert (profile.account, profile.insecure) == ('alice', True)


class TestRoundTrip:
    def test_save_load_save_is_byte_stable(self, store):
        profile = make_profile('east', insecure=True, act_as_account='carol', dcs=['https://b.example.com', 'https://a.example.com'],
                               extra={'zeta': 1, 'alpha': {'b': 2, 'a': 1}})
        path = store.save(profile)
        first = path.read_bytes()
        store.save(store.get('east'))
        assert path.read_bytes() == first
        assert first.index(b'"account"') < first.index(b'"actAsAccount"') < first.index(b'"alpha"')


class TestEdit:
    def fake_editor(self, new_text):
        """Return a run() that replaces the edited file with new_text."""
        def run(argv):
            with open(argv[-1], 'w') as f:
                f.write(new_text)
            return SimpleNamespace(returncode=0)
        return run

    def test_edit_saves_change(self, store):
        store.save(make_profile('east'))
        edited = store.edit('east', editor='ed', run=self.fake_editor(f"url={URL}\naccount=bob\nkeyId={KEY_ID}\n"))
        assert edited.account == 'bob'
        assert store.get('east').account == 'bob'

    def test_unchanged_edit_is_not_saved(self, store):
        store.save(make_profile('east'))
        assert store.edit('east', editor='ed', run=self.fake_editor(make_profile('east').to_text())) is None

    def test_invalid_edit_is_abandoned_without_retry(self, store):
        store.save(make_profile('east'))
        assert store.edit('east', editor='ed', run=self.fake_editor("keyId=nope\n"), retry=lambda e: False) is None
        assert store.get('east') == make_profile('east')

    def test_editor_failure(self, store):
        store.save(make_profile('east'))
        with pytest.raises(ConfigError, match='exited'):
            store.edit('east', editor='ed', run=lambda argv: SimpleNamespace(returncode=1))

    def test_env_is_not_editable(self, store):
        with pytest.raises(UsageError):
            store.edit(ENV_PROFILE_NAME)
