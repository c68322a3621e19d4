"""Helpers for OpenAI Structured Outputs."""


def strict_schema(schema: dict) -> dict:
    """Make a Pydantic-generated JSON schema acceptable to strict mode.

    Strict mode wants every property listed in `required` and
    `additionalProperties: false` on every object, including the nested
    models Pydantic moves into `$defs` (e.g. the per-face entries of a
    detection response).

    Applied via: model_config = ConfigDict(json_schema_extra=strict_schema)
    """
    _close_object(schema)
    for definition in schema.get("$defs", {}).values():
        _close_object(definition)
    return schema


def _close_object(node: dict) -> None:
    if "properties" in node:
        node["required"] = list(node["properties"].keys())
        node["additionalProperties"] = False
