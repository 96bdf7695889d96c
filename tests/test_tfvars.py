"""Tests for in-place tfvars editing."""

from hypothesis import given, settings, strategies as st

from gpu_provisioner.engine.tfvars import TfvarsEditor, render_value

TFVARS = """# GPU infrastructure
name_prefix = "dpg-infra-staging"
public_subnet_cidrs = [
  "10.0.1.0/24",
  "10.0.2.0/24",
]
instance_type = "g5.4xlarge"
use_spot = false
"""


class TestRenderValue:
    """Python values rendered as HCL literals."""

    def test_scalars(self):
        assert render_value(True) == "true"
        assert render_value(False) == "false"
        assert render_value(3) == "3"
        assert render_value("us-east-1a") == '"us-east-1a"'

    def test_lists(self):
        assert render_value(["10.0.1.0/24", "10.0.2.0/24"]) == '["10.0.1.0/24", "10.0.2.0/24"]'
        assert render_value([]) == "[]"

    @settings(max_examples=50, deadline=None)
    @given(text=st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=30))
    def test_strings_are_quoted(self, text):
        """Every string renders as a quoted literal."""
        rendered = render_value(text)

        assert rendered.startswith('"') and rendered.endswith('"')


class TestTfvarsEditor:
    """Reading and rewriting top-level assignments."""

    def test_read_handles_multiline_lists(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)

        values = TfvarsEditor(path).read()

        assert values["name_prefix"] == '"dpg-infra-staging"'
        assert values["public_subnet_cidrs"].startswith("[")
        assert "10.0.2.0/24" in values["public_subnet_cidrs"]
        assert values["use_spot"] == "false"

    def test_get_unquotes_strings(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)

        editor = TfvarsEditor(path)

        assert editor.get("instance_type") == "g5.4xlarge"
        assert editor.get("missing") is None

    def test_update_replaces_in_place_and_backs_up(self, tmp_path):
        """Existing assignments are replaced where they are and the old file is kept."""
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)
        editor = TfvarsEditor(path)

        edit = editor.update({"instance_type": "g5.2xlarge", "use_spot": True}, reason="quota selection")

        assert editor.get("instance_type") == "g5.2xlarge"
        assert editor.get("use_spot") == "true"
        assert edit.before["instance_type"] == '"g5.4xlarge"'
        assert edit.after["instance_type"] == '"g5.2xlarge"'
        assert edit.backup_path.read_text() == TFVARS
        lines = path.read_text().splitlines()
        assert lines[0] == "# GPU infrastructure"
        assert lines.index('instance_type = "g5.2xlarge"') < lines.index("use_spot = true")

    def test_update_replaces_multiline_list(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)
        editor = TfvarsEditor(path)

        editor.update({"public_subnet_cidrs": ["10.0.5.0/24", "10.0.6.0/24"]}, reason="alternate ranges")

        content = path.read_text()
        assert 'public_subnet_cidrs = ["10.0.5.0/24", "10.0.6.0/24"]' in content
        assert "10.0.1.0/24" not in content
        assert editor.get("instance_type") == "g5.4xlarge"

    def test_update_appends_new_keys_with_reason(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)
        editor = TfvarsEditor(path)

        editor.update({"availability_zone": "us-east-1b"}, reason="zone failover from us-east-1a")

        lines = path.read_text().splitlines()
        assert lines[-2] == "# zone failover from us-east-1a"
        assert lines[-1] == 'availability_zone = "us-east-1b"'

    def test_update_creates_missing_file(self, tmp_path):
        """A missing file is created and there is nothing to back up."""
        editor = TfvarsEditor(tmp_path / "terraform.tfvars")

        edit = editor.update({"name_prefix": "ml-dev"}, reason="rename")

        assert edit.backup_path is None
        assert edit.before == {"name_prefix": None}
        assert editor.get("name_prefix") == "ml-dev"

    def test_every_update_keeps_a_distinct_backup(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(TFVARS)
        editor = TfvarsEditor(path)

        first = editor.update({"use_spot": True}, reason="one")
        second = editor.update({"use_spot": False}, reason="two")

        assert first.backup_path != second.backup_path
        assert "use_spot = true" in second.backup_path.read_text()
