"""Executes function calls against the vault."""

import logging
from typing import Any

from pydantic import ValidationError

from vaultkeeper.cancellation import CancellationToken, OperationCancelled
from vaultkeeper.functions import (
    ARGUMENT_MODELS,
    AIFunction,
    DeleteVaultFilesArgs,
    FunctionCall,
    FunctionResponse,
    ListVaultFilesArgs,
    MoveVaultFilesArgs,
    ReadVaultFilesArgs,
    RequestWebSearchArgs,
    SearchVaultFilesArgs,
    WriteVaultFileArgs,
)
from vaultkeeper.vault import FileStore

logger = logging.getLogger(__name__)

DELETION_NOT_CONFIRMED = "Confirmation was false, no action taken"
MOVE_LENGTH_MISMATCH = (
    "Source paths array length does not equal destination paths array length"
)


class FunctionDispatcher:
    """Routes a :class:`FunctionCall` to its vault operation.

    ``dispatch`` never raises: unknown functions, invalid arguments and
    failing operations all come back as a response whose payload holds
    an ``error`` key, so the model can see what went wrong and retry.
    """

    def __init__(self, vault: FileStore):
        self.vault = vault
        self._handlers = {
            AIFunction.LIST_VAULT_FILES: self.list_vault_files,
            AIFunction.READ_VAULT_FILES: self.read_vault_files,
            AIFunction.SEARCH_VAULT_FILES: self.search_vault_files,
            AIFunction.WRITE_VAULT_FILE: self.write_vault_file,
            AIFunction.DELETE_VAULT_FILES: self.delete_vault_files,
            AIFunction.MOVE_VAULT_FILES: self.move_vault_files,
            AIFunction.REQUEST_WEB_SEARCH: self.request_web_search,
        }

    async def dispatch(
        self, call: FunctionCall, cancel: CancellationToken | None = None,
    ) -> FunctionResponse:
        def respond(payload: Any) -> FunctionResponse:
            return FunctionResponse(name=call.name, response=payload, tool_id=call.tool_id)

        try:
            function = AIFunction.from_name(call.name)
        except ValueError:
            logger.warning(f"Unknown function requested: {call.name}")
            return respond({"error": f"Unknown function request {call.name}"})

        try:
            args = ARGUMENT_MODELS[function].model_validate(call.arguments)
        except ValidationError as e:
            logger.warning(f"Invalid arguments for {call.name}: {e}")
            return respond({"error": f"Invalid arguments for {call.name}: {e}"})

        logger.info(f"Calling {call.name} with {call.arguments}")
        cancel = cancel or CancellationToken()
        try:
            result = await cancel.guard(self._handlers[function](args))
        except OperationCancelled:
            logger.info(f"Function {call.name} cancelled")
            return respond({"error": "Operation cancelled"})
        except Exception as e:
            logger.error(f"Function {call.name} raised: {e}")
            return respond({"error": f"Error calling {call.name}: {e}"})

        return respond(result)

    # -- handlers ------------------------------------------------------------

    async def list_vault_files(self, args: ListVaultFilesArgs) -> list[dict]:
        entries = await self.vault.list_files(args.path, args.recursive)
        return [
            {"type": "directory" if e.is_dir else "file", "path": e.path}
            for e in entries
        ]

    async def read_vault_files(self, args: ReadVaultFilesArgs) -> dict:
        results = []
        for path in args.file_paths:
            content = await self.vault.read_file(path)
            if content is None:
                results.append({"path": path, "success": False, "error": "File not found"})
            else:
                results.append({"path": path, "success": True, "content": content})
        return {"results": results}

    async def search_vault_files(self, args: SearchVaultFilesArgs) -> dict:
        results = []
        for term in args.search_terms:
            matches = await self.vault.search_files(term)
            results.append({
                "searchTerm": term,
                "results": [
                    {
                        "path": m.path,
                        "snippets": [
                            {"text": s.text, "matchPosition": s.match_index}
                            for s in m.snippets
                        ],
                    }
                    for m in matches
                ],
            })

        payload: dict[str, Any] = {"results": results}
        if all(not r["results"] for r in results):
            entries = await self.vault.list_files()
            payload["allFiles"] = [e.path for e in entries if not e.is_dir]
        return payload

    async def write_vault_file(self, args: WriteVaultFileArgs) -> dict:
        success = await self.vault.write_file(args.file_path, args.content)
        if not success:
            return {"success": False, "error": f"Could not write {args.file_path}"}
        return {"success": True}

    async def delete_vault_files(self, args: DeleteVaultFilesArgs) -> dict:
        if not args.confirm_deletion:
            return {"error": DELETION_NOT_CONFIRMED}
        results = []
        for path in args.file_paths:
            outcome = await self.vault.delete_file(path)
            result = {"path": path, "success": outcome.success}
            if outcome.error:
                result["error"] = outcome.error
            results.append(result)
        return {"results": results}

    async def move_vault_files(self, args: MoveVaultFilesArgs) -> dict:
        if len(args.source_paths) != len(args.destination_paths):
            return {"error": MOVE_LENGTH_MISMATCH}
        results = []
        for source, destination in zip(args.source_paths, args.destination_paths):
            outcome = await self.vault.move_file(source, destination)
            result = {
                "sourcePath": source,
                "destinationPath": destination,
                "success": outcome.success,
            }
            if outcome.error:
                result["error"] = outcome.error
            results.append(result)
        return {"results": results}

    async def request_web_search(self, args: RequestWebSearchArgs) -> dict:
        # the next Gemini request enables google_search
        return {}
