"""Named, writable sinks inside the artifacts directory."""

import os


class ArtifactSink:
    """Hand out paths for named artifact files under one directory."""

    def __init__(self, directory):
        self.directory = os.path.abspath(directory)

    def path(self, name):
        """Return the absolute path for artifact name, creating the directory if needed."""
        if os.path.basename(name) != name or name in ("", ".", ".."):
            raise ValueError(f"Artifact name '{name}' must be a plain file name")
        os.makedirs(self.directory, exist_ok=True)
        return os.path.join(self.directory, name)

    def write(self, name, text):
        """Write text to artifact name, return its path."""
        dest = self.path(name)
        with open(dest, "w") as dest_file:
            dest_file.write(text)
        return dest


def sink_from_config(cfg):
    """Return an ArtifactSink rooted at the configured artifacts directory."""
    return ArtifactSink(cfg.artifacts)
