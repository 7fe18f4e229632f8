"""Search step: one query per input."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Generic, TypeVar

from ..context import StepStartStopContext
from ..converters import SearchBatchConverter, SearchSingleConverter
from ..output import StepOutput
from ..records import OffsetCounter, SearchResult, Sorting
from ..steps import InputFunction, resolve_input
from .client import MongoDbQueryClient

I = TypeVar("I")


class SearchOutput(Enum):
    """Shape of what the search step sends downstream."""

    DOCUMENTS = "documents"
    """One SearchResult with the raw documents."""

    RECORDS = "records"
    """One SearchResults with the converted records."""

    FLATTEN = "flatten"
    """Each converted record on its own."""


class MongoDbSearchStep(Generic[I]):
    """Step performing a query for each received input.

    The database, collection, filter and sorting are functions of the input,
    plain or async.

    Args:
        name: Name of the step
        query_client: Client executing the queries
        database: Function returning the database name
        collection: Function returning the collection name
        filter: Function returning the filter document
        sorting: Function returning the ordered sort clause
        output: Shape of the results sent downstream
    """

    def __init__(
        self,
        name: str,
        query_client: MongoDbQueryClient,
        database: InputFunction[I, str],
        collection: InputFunction[I, str],
        filter: InputFunction[I, Mapping[str, Any]],
        sorting: InputFunction[I, Mapping[str, Sorting] | Sequence[tuple[str, int]]],
        output: SearchOutput = SearchOutput.DOCUMENTS,
    ) -> None:
        self.name = name
        self.query_client = query_client
        self._database = database
        self._collection = collection
        self._filter = filter
        self._sorting = sorting
        self._output = output
        self.offset = OffsetCounter()

    async def start(self, context: StepStartStopContext) -> None:
        await self.query_client.start(context)

    async def execute(
        self, input: I, output: StepOutput, tags: dict[str, str] | None = None
    ) -> None:
        database = await resolve_input(self._database, input)
        collection = await resolve_input(self._collection, input)
        find_clause = await resolve_input(self._filter, input)
        sort = await resolve_input(self._sorting, input)

        results = await self.query_client.execute(database, collection, find_clause, sort, tags)
        search_result = SearchResult(input=input, documents=results.documents, meters=results.meters)

        if self._output is SearchOutput.DOCUMENTS:
            await output.send(search_result)
        elif self._output is SearchOutput.RECORDS:
            await SearchBatchConverter(database, collection).supply(self.offset, search_result, output)
        else:
            await SearchSingleConverter(database, collection).supply(self.offset, search_result, output)

    async def stop(self, context: StepStartStopContext) -> None:
        await self.query_client.stop(context)
