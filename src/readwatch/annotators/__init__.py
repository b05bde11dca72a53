from importlib.metadata import entry_points

from .command import CommandAnnotator

# built-in first, installed plugins may add to (or shadow) it
ANNOTATOR_REGISTRY = {"command": CommandAnnotator}
ANNOTATOR_REGISTRY.update({ep.name: ep.load()
                           for ep in entry_points(group="readwatch.annotators")})


def load(name: str, **kw):
    try:
        cls = ANNOTATOR_REGISTRY[name]
    except KeyError as e:
        valid = ", ".join(sorted(ANNOTATOR_REGISTRY))
        raise KeyError(f"unknown annotator '{name}'. Valid annotators: {valid}") from e
    return cls(**kw)  # return an instance


__all__ = ["ANNOTATOR_REGISTRY", "CommandAnnotator", "load"]
