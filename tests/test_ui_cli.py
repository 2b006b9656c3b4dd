import asyncio
import json
from types import SimpleNamespace

import pytest
from prompt_toolkit.keys import Keys

import project_viewer as pv


class DummyApplication:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.invalidate_calls = 0
        self.background_tasks = []
        self.exited = False
        self.ran = False
        DummyApplication.instances.append(self)

    def invalidate(self):
        self.invalidate_calls += 1

    def create_background_task(self, coro):
        self.background_tasks.append(coro)

    def exit(self):
        self.exited = True

    def run(self):
        self.ran = True


@pytest.fixture
def ui(monkeypatch, ctx, api, tmp_path):
    DummyApplication.instances.clear()
    monkeypatch.setattr(pv, 'Application', DummyApplication)
    store = pv.ProjectStore(ctx.mutations)
    app = pv.build_ui(ctx, api, store, export_dir=str(tmp_path))

    def _find_binding(key):
        for binding in app.kwargs['key_bindings'].bindings:
            if binding.keys == (key,) and binding.filter():
                return binding.handler
        return None

    def press(key, data=''):
        handler = _find_binding(key)
        if handler is None:
            raise AssertionError(f'binding for {key!r} not found')
        return handler(SimpleNamespace(app=app, data=data))

    def type_text(text):
        for ch in text:
            press(Keys.Any, data=ch)

    def render_pass():
        app.kwargs['before_render'](app)

    return SimpleNamespace(
        app=app, store=store, press=press, type_text=type_text, render_pass=render_pass,
        active=lambda key: _find_binding(key) is not None, export_dir=tmp_path,
    )


def test_keys_only_queue_commands_until_render_pass(ui):
    ui.press('n')
    ui.type_text('Bridge')
    ui.press(Keys.Enter)
    assert len(ui.store.projects) == 1

    ui.render_pass()
    assert len(ui.store.projects) == 2
    assert ui.store.current().name == 'Bridge'
    assert ui.app.invalidate_calls >= 1


def test_selection_and_public_toggle(ui):
    first = ui.store.current().id
    ui.press('n')
    ui.type_text('Second')
    ui.press(Keys.Enter)
    ui.render_pass()

    ui.press('k')
    ui.render_pass()
    assert ui.store.open_project == first

    ui.press('p')
    ui.render_pass()
    assert ui.store.current().is_public is True

    ui.press('j')
    ui.render_pass()
    assert ui.store.open_project != first


def test_delete_needs_confirmation(ui):
    original = ui.store.current().id
    ui.press('x')
    ui.render_pass()
    assert ui.store.current().id == original

    ui.press('x')
    ui.render_pass()
    assert len(ui.store.projects) == 1
    assert ui.store.current().id != original


def test_delete_confirmation_is_dropped_by_other_keys(ui):
    original = ui.store.current().id
    ui.press('x')
    ui.press('p')
    ui.press('x')
    ui.render_pass()
    assert ui.store.current().id == original
    assert ui.store.current().is_public is True

    ui.press('x')
    ui.render_pass()
    assert ui.store.current().id != original


def test_new_project_needs_a_name(ui):
    ui.press('n')
    ui.type_text('   ')
    ui.press(Keys.Enter)
    assert ui.store.mutations.pending() == 0
    assert ui.active(Keys.Any)

    ui.type_text('Tower')
    ui.press(Keys.Enter)
    ui.render_pass()
    assert ui.store.current().name == 'Tower'
    assert not ui.active(Keys.Any)


def test_prompt_swallows_command_keys(ui):
    ui.press('n')
    assert not ui.active('x')
    assert not ui.active('q')

    ui.type_text('xq')
    ui.press(Keys.Backspace)
    ui.press(Keys.Enter)
    ui.render_pass()
    assert len(ui.store.projects) == 2
    assert ui.store.current().name == 'x'
    assert ui.app.exited is False


def test_escape_cancels_prompt(ui):
    ui.press('n')
    ui.type_text('Nope')
    ui.press(Keys.Escape)
    ui.render_pass()
    assert len(ui.store.projects) == 1
    assert ui.active('n')


def test_rename_starts_from_current_name(ui):
    ui.press('R')
    ui.type_text(' 2')
    ui.press(Keys.Enter)
    assert ui.store.current().name == 'Unnamed'

    ui.render_pass()
    assert ui.store.current().name == 'Unnamed 2'


def test_import_pasted_json_creates_project(ui):
    ui.press('i')
    ui.press(Keys.BracketedPaste, data='{"span":\r\n  40}')
    ui.press(Keys.Enter)
    ui.render_pass()

    assert len(ui.store.projects) == 2
    assert ui.store.current().name == 'JSON import'
    assert ui.store.current().data == {'span': 40}


def test_import_rejects_bad_json_and_stays_open(ctx, ui):
    ui.press('i')
    ui.type_text('{"span": ')
    ui.press(Keys.Enter)

    assert ctx.notifications.latest().message == 'Could not import JSON'
    assert ui.store.mutations.pending() == 0
    assert ui.active(Keys.Any)

    ui.type_text('1}')
    ui.press(Keys.Enter)
    ui.render_pass()
    assert ui.store.current().data == {'span': 1}


def test_export_writes_json_file(ctx, ui):
    ui.store.apply(pv.RenameProject(name='My bridge'))
    ui.store.apply(pv.ReplaceData(data={'span': 40}))

    ui.press('e')

    out = ui.export_dir / 'My_bridge.json'
    assert json.loads(out.read_text(encoding='utf-8')) == {'span': 40}
    assert ctx.notifications.latest().message.startswith('Exported project `My bridge`')


def test_pull_without_remote_list_reports_error(ctx, ui):
    ui.press('L')
    assert ctx.notifications.latest().level == 'error'


def test_refresh_then_pull_remote_project(ctx, ui, fake_http, dispatcher):
    fake_http.route('GET', 'projects', text=json.dumps([
        {'id': 3, 'name': 'Shared', 'is_public': True, 'created_at': '2024-01-01T00:00:00Z'},
    ]))
    fake_http.route('GET', 'project/3', text=json.dumps({
        'id': 3, 'user_id': 1, 'name': 'Shared', 'data': {'k': 1}, 'is_public': True,
        'created_at': '2024-01-01T00:00:00Z',
    }))

    ui.press('r')
    asyncio.run(ui.app.background_tasks.pop())
    ui.press('L')
    dispatcher.close()

    ui.render_pass()
    assert ui.store.current().name == 'Shared'
    assert ui.store.current().data == {'k': 1}


def test_upload_creates_remote_project(ctx, ui, fake_http, dispatcher):
    fake_http.route('POST', 'project/create', text=json.dumps({'project_id': 77}))

    ui.press('u')
    dispatcher.close()

    assert json.loads(fake_http.calls[0].data)['name'] == 'Unnamed'
    assert ctx.notifications.latest().message == 'Uploaded project `Unnamed` as #77.'


def test_quit_exits_app(ui):
    ui.press('q')
    assert ui.app.exited is True


def test_cli_list_prints_entries(ctx, api, fake_http, capsys):
    fake_http.route('GET', 'projects', text=json.dumps([
        {'id': 12, 'name': 'Tower', 'is_public': False, 'created_at': '2024-01-01T00:00:00Z'},
    ]))
    args = pv.build_parser().parse_args(['list'])

    assert pv.run_command(args, ctx, api) == 0
    out = capsys.readouterr().out
    assert '#12' in out and 'Tower' in out and 'private' in out


def test_cli_login_with_password_flag(ctx, api, fake_http, capsys):
    fake_http.route('POST', 'user/login', text=json.dumps({'user_id': 3, 'session_id': 's3'}))
    args = pv.build_parser().parse_args(['login', '--email', 'ada@example.com', '--password', 'pw'])

    assert pv.run_command(args, ctx, api) == 0
    assert 'Signed in as ada@example.com' in capsys.readouterr().out
    assert ctx.session.get().session.id == 's3'


def test_cli_login_prompts_for_password(monkeypatch, ctx, api, fake_http):
    fake_http.route('POST', 'user/login', status=401, text='nope')
    monkeypatch.setattr(pv, 'pt_prompt', lambda message, is_password=False: 'typed')
    args = pv.build_parser().parse_args(['login', '--email', 'ada@example.com'])

    assert pv.run_command(args, ctx, api) == 1
    assert json.loads(fake_http.calls[0].data)['password'] == 'typed'


def test_cli_whoami_and_logout(ctx, api, fake_http, signed_in, capsys):
    fake_http.route('POST', 'user/logout', status=500, text='oops')
    parser = pv.build_parser()

    assert pv.run_command(parser.parse_args(['whoami']), ctx, api) == 0
    assert 'ada@example.com' in capsys.readouterr().out
    assert pv.run_command(parser.parse_args(['logout']), ctx, api) == 0
    assert pv.run_command(parser.parse_args(['whoami']), ctx, api) == 1


def test_cli_push_rejects_bad_json(ctx, api, fake_http, tmp_path, capsys):
    bad = tmp_path / 'bad.json'
    bad.write_text('{"a": ', encoding='utf-8')
    args = pv.build_parser().parse_args(['push', str(bad), '--name', 'X'])

    assert pv.run_command(args, ctx, api) == 2
    assert 'Could not import JSON' in capsys.readouterr().err
    assert fake_http.calls == []


def test_cli_pull_writes_output_file(ctx, api, fake_http, tmp_path):
    fake_http.route('GET', 'project/4', text=json.dumps({
        'id': 4, 'user_id': 1, 'name': 'Four', 'data': {'n': 4}, 'is_public': False,
        'created_at': '2024-01-01T00:00:00Z',
    }))
    out = tmp_path / 'four.json'
    args = pv.build_parser().parse_args(['pull', '4', '--output', str(out)])

    assert pv.run_command(args, ctx, api) == 0
    assert json.loads(out.read_text(encoding='utf-8')) == {'n': 4}


def test_cli_publish_reports_http_error(ctx, api, fake_http, capsys):
    fake_http.route('POST', 'project/4/public', status=403, text='not yours')
    args = pv.build_parser().parse_args(['publish', '4', '--private'])

    assert pv.run_command(args, ctx, api) == 1
    assert json.loads(fake_http.calls[0].data) is False
    assert 'not yours' in capsys.readouterr().err


def test_cli_ui_imports_files_before_running(monkeypatch, ctx, api, tmp_path):
    DummyApplication.instances.clear()
    monkeypatch.setattr(pv, 'Application', DummyApplication)
    good = tmp_path / 'good.json'
    good.write_text('{"ok": true}', encoding='utf-8')
    args = pv.build_parser().parse_args(['ui', '--open', str(good), '--open', str(tmp_path / 'missing.json')])

    assert pv.run_command(args, ctx, api) == 0

    app = DummyApplication.instances[-1]
    assert app.ran is True
    assert ctx.mutations.pending() == 1
    assert ctx.notifications.latest().message == 'Could not import JSON'


def test_main_exits_on_bad_config(tmp_path, capsys):
    cfg = tmp_path / 'cfg.yml'
    cfg.write_text('api_base: 5\n', encoding='utf-8')
    with pytest.raises(SystemExit) as excinfo:
        pv.main(['--config', str(cfg), 'whoami'])
    assert excinfo.value.code == 2
    assert 'Failed to load config' in capsys.readouterr().err
