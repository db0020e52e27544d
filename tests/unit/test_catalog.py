"""Workflow catalog versioning tests."""

import pytest

from forgeflow.catalog import WorkflowCatalog
from forgeflow.errors import CompilationError, InputValidationError, NotFoundError
from forgeflow.graph import PlanCache
from forgeflow.persistence import InMemoryStateStore
from forgeflow.schema import validate_variables

DEFINITION = {
    "id": "invoice",
    "nodes": [
        {"id": "extract", "type": "agent", "params": {"agent": "reader"}},
        {"id": "file", "type": "task_mutation", "params": {"operation": "create"}},
    ],
    "edges": [{"source": "extract", "target": "file"}],
    "variable_schema": {
        "type": "object",
        "properties": {"amount": {"type": "number"}},
        "required": ["amount"],
    },
}


@pytest.mark.asyncio
async def test_save_versions_only_on_structural_change():
    catalog = WorkflowCatalog(InMemoryStateStore())

    first = await catalog.save(DEFINITION)
    unchanged = await catalog.save(dict(DEFINITION, name="Invoice intake"))
    changed = await catalog.save(
        dict(DEFINITION, edges=[], nodes=DEFINITION["nodes"][:1])
    )

    assert first.version == 1
    assert unchanged.version == 1
    assert changed.version == 2
    assert not changed.published
    assert (await catalog.get("invoice")).version == 2
    assert (await catalog.get("invoice", 1)).edges == first.edges


@pytest.mark.asyncio
async def test_invalid_graph_is_never_stored():
    store = InMemoryStateStore()
    catalog = WorkflowCatalog(store)
    looping = dict(
        DEFINITION,
        edges=[
            {"source": "extract", "target": "file"},
            {"source": "file", "target": "extract"},
        ],
    )

    with pytest.raises(CompilationError):
        await catalog.save(looping)
    with pytest.raises(CompilationError):
        await catalog.save(dict(DEFINITION, variable_schema={"type": "no-such-type"}))

    assert await store.list_workflows() == []


@pytest.mark.asyncio
async def test_publish_defaults_to_latest_version():
    cache = PlanCache()
    catalog = WorkflowCatalog(InMemoryStateStore(), plan_cache=cache)
    await catalog.save(DEFINITION)

    published = await catalog.publish("invoice")

    assert published.published
    assert (await catalog.publish("invoice", 1)).published
    assert len(cache) == 1
    assert [w.id for w in await catalog.list()] == ["invoice"]


@pytest.mark.asyncio
async def test_missing_workflow_raises_not_found():
    catalog = WorkflowCatalog(InMemoryStateStore())

    with pytest.raises(NotFoundError):
        await catalog.get("ghost")
    with pytest.raises(NotFoundError):
        await catalog.publish("ghost", 2)


def test_validate_variables_lists_every_violation():
    schema = DEFINITION["variable_schema"]
    schema = dict(schema, properties={**schema["properties"], "tags": {"type": "array"}})

    validate_variables(schema, {"amount": 12.5})
    with pytest.raises(InputValidationError) as exc_info:
        validate_variables(schema, {"tags": "urgent"})

    errors = exc_info.value.details["errors"]
    assert len(errors) == 2
    assert {e["path"] for e in errors} == {"", "tags"}
