#!/usr/bin/env python3
#
# tests/test_vhosts.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""nginx site discovery."""

from __future__ import annotations

from pathlib import Path

from certwarden.certs.vhosts import VirtualHostRegistry, parse_vhost

SITE = """\
# managed by hand
server {
    listen 80;
    listen [::]:80;
    server_name example.com www.example.com;  # primary
    root /var/www/example;
}

server {
    listen 443 ssl http2;
    server_name example.com www.example.com;
    ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem;
    ssl_certificate_key /etc/letsencrypt/live/example.com/privkey.pem;
}
"""


class TestParse:

	def test_names_ports_and_paths(self):
		domain = parse_vhost(SITE)
		assert domain.name == "example.com"
		assert domain.aliases == ("www.example.com",)
		assert domain.document_root == Path("/var/www/example")
		assert domain.listen_ports == (80, 443)
		assert domain.listens_tls is True
		assert domain.ssl_certificate == Path("/etc/letsencrypt/live/example.com/fullchain.pem")

	def test_catch_all_names_are_ignored(self):
		assert parse_vhost("server {\n  listen 80 default_server;\n  server_name _;\n}\n") is None

	def test_commented_directives_are_ignored(self):
		text = "server {\n  # server_name old.example.com;\n  server_name new.example.com;\n}\n"
		assert parse_vhost(text).name == "new.example.com"


class TestRegistry:

	def test_scan_marks_enabled_sites(self, sites):
		available, enabled = sites
		(available / "example").write_text(SITE)
		(available / "blog").write_text("server {\n  server_name blog.example.com;\n}\n")
		(available / "default").write_text("server {\n  server_name default.example.com;\n}\n")
		(enabled / "example").symlink_to(available / "example")

		registry = VirtualHostRegistry(available, enabled)
		domains = registry.scan()

		assert [d.name for d in domains] == ["blog.example.com", "example.com"]
		assert {d.name: d.enabled for d in domains} == {"blog.example.com": False, "example.com": True}

	def test_find_by_alias_and_file_name(self, sites):
		available, enabled = sites
		(available / "example.conf").write_text(SITE)
		registry = VirtualHostRegistry(available, enabled)

		assert registry.find("www.example.com").name == "example.com"
		assert registry.find("example").name == "example.com"
		assert registry.find("other.example.org") is None

	def test_missing_directory_is_empty(self, tmp_path):
		registry = VirtualHostRegistry(tmp_path / "nope", tmp_path / "nope-enabled")
		assert registry.scan() == []
