"""Tests for nginx -t diagnostic classification."""

from servermigrate.modules.nginx.diagnostics import RemediationKind, classify, config_file_from_output


class TestClassify:
    """Each recognised diagnostic maps to exactly one action."""

    def test_missing_module_conf(self):
        output = ('nginx: [emerg] open() "/etc/nginx/modules-enabled/50-mod-http-geoip.conf" failed '
                  '(2: No such file or directory) in /etc/nginx/nginx.conf:4')
        actions, unresolved = classify(output)
        assert [a.kind for a in actions] == [RemediationKind.MISSING_MODULE_CONF]
        assert actions[0].path == "/etc/nginx/modules-enabled/50-mod-http-geoip.conf"
        assert unresolved == []

    def test_missing_shared_object(self):
        output = ('nginx: [emerg] dlopen() "/usr/share/nginx/modules/ngx_stream_module.so" failed '
                  '(/usr/share/nginx/modules/ngx_stream_module.so: cannot open shared object file)')
        actions, _ = classify(output)
        assert actions[0].kind == RemediationKind.MISSING_MODULE_OBJECT
        assert actions[0].path.endswith("ngx_stream_module.so")

    def test_broken_site_link(self):
        output = ('nginx: [emerg] open() "/etc/nginx/sites-enabled/example.com" failed '
                  '(2: No such file or directory) in /etc/nginx/nginx.conf:60')
        actions, _ = classify(output)
        assert actions[0].kind == RemediationKind.BROKEN_SITE_LINK

    def test_missing_directory_from_open(self):
        output = 'nginx: [emerg] open() "/var/log/nginx/access.log" failed (2: No such file or directory)'
        actions, _ = classify(output)
        assert actions[0].kind == RemediationKind.MISSING_DIRECTORY
        assert actions[0].path == "/var/log/nginx"

    def test_missing_directory_from_mkdir(self):
        output = 'nginx: [emerg] mkdir() "/var/lib/nginx/body" failed (2: No such file or directory)'
        actions, _ = classify(output)
        assert actions[0].path == "/var/lib/nginx/body"

    def test_unmatched_errors_are_unresolved(self):
        output = ('nginx: [warn] conflicting server name "a" on 0.0.0.0:80, ignored\n'
                  'nginx: [emerg] unknown directive "foo" in /etc/nginx/nginx.conf:3\n'
                  'nginx: configuration file /etc/nginx/nginx.conf test failed')
        actions, unresolved = classify(output)
        assert actions == []
        assert unresolved == ['nginx: [emerg] unknown directive "foo" in /etc/nginx/nginx.conf:3']

    def test_duplicates_are_collapsed(self):
        line = 'nginx: [emerg] mkdir() "/var/lib/nginx/body" failed (2: No such file or directory)'
        actions, _ = classify(f"{line}\n{line}\n")
        assert len(actions) == 1


class TestConfigFile:
    def test_config_file_from_output(self):
        output = ("nginx: the configuration file /etc/nginx/nginx.conf syntax is ok\n"
                  "nginx: configuration file /etc/nginx/nginx.conf test is successful\n")
        assert config_file_from_output(output) == "/etc/nginx/nginx.conf"

    def test_no_config_file(self):
        assert config_file_from_output("nginx: command not found") == ""
