"""
Pipelines and Transactions

A Pipeline queues commands locally and sends them in a single write. With
transaction=True the batch is wrapped in MULTI/EXEC so the server applies
it as one unit or not at all.
"""

import logging
from typing import Any, Callable, List, Optional, Tuple

from ..exceptions import CommandError, KVError, ProtocolError, TransactionAborted
from .commands import CommandsMixin

logger = logging.getLogger(__name__)


class Pipeline(CommandsMixin):
    """
    Batch of queued commands.

    Usage:
        with client.pipeline(transaction=True) as pipe:
            pipe.incr('counter').lpush('queue', 'job')
            counter, length = pipe.execute()

    Attributes:
        client: The KVClient whose connection carries the batch
        transaction: Whether the batch runs inside MULTI/EXEC
        command_stack: Queued (args, callback) pairs
    """

    def __init__(self, client, transaction: bool = False):
        self.client = client
        self.transaction = transaction
        self.command_stack: List[Tuple[tuple, Optional[Callable]]] = []

    def __len__(self) -> int:
        return len(self.command_stack)

    def __repr__(self) -> str:
        return f"Pipeline<transaction={self.transaction},queued={len(self)}>"

    def execute_command(self, *args, callback: Callable = None, timeout=None) -> "Pipeline":
        """Queue a command. Per-command timeouts do not apply to batches."""
        self.command_stack.append((args, callback))
        return self

    def reset(self) -> None:
        self.command_stack = []

    def execute(self, raise_on_error: bool = False) -> List[Any]:
        """
        Send the queued commands and collect their replies.

        Args:
            raise_on_error: Raise the first failed command's error instead of
                returning it in the result list

        Returns:
            One entry per queued command, in order: the processed reply or
            the exception instance of a failed command

        Raises:
            TransactionAborted: The server discarded the transaction
            ConnectionError: The session failed mid-batch
        """
        stack = self.command_stack
        if not stack:
            return []
        try:
            if self.transaction:
                replies = self._execute_transaction(stack)
            else:
                replies = self._execute_pipeline(stack)
        finally:
            self.reset()
        return self._process(stack, replies, raise_on_error)

    def _execute_pipeline(self, stack) -> List[Any]:
        connection = self.client.connection
        parser = connection.parser
        connection.send_packed(b"".join(parser.encode_command(*args) for args, _ in stack))
        return [connection.read_response() for _ in stack]

    def _execute_transaction(self, stack) -> List[Any]:
        connection = self.client.connection
        parser = connection.parser
        commands = [("MULTI",)] + [args for args, _ in stack] + [("EXEC",)]
        connection.send_packed(b"".join(parser.encode_command(*args) for args in commands))

        multi = connection.read_response()
        queue_errors = []
        for index in range(len(stack)):
            reply = connection.read_response()
            if isinstance(reply, CommandError):
                queue_errors.append((index, reply))
        result = connection.read_response()

        if isinstance(multi, CommandError):
            raise multi
        if isinstance(result, CommandError):
            if result.prefix == "EXECABORT" and queue_errors:
                index, error = queue_errors[0]
                name = stack[index][0][0]
                logger.debug(f"Transaction aborted at command #{index + 1} ({name}): {error}")
                raise TransactionAborted(f"{result} Command #{index + 1} ({name}) failed: {error}")
            if result.prefix == "EXECABORT":
                raise TransactionAborted(str(result))
            raise result
        if result is None:
            raise TransactionAborted("EXECABORT Transaction discarded")
        if len(result) != len(stack):
            raise ProtocolError(
                f"EXEC returned {len(result)} replies for {len(stack)} commands"
            )
        return result

    def _process(self, stack, replies: List[Any], raise_on_error: bool) -> List[Any]:
        results = []
        for (args, callback), reply in zip(stack, replies):
            if isinstance(reply, CommandError):
                results.append(reply)
                continue
            try:
                results.append(self.client.process_reply(reply, callback))
            except KVError as exc:
                results.append(exc)

        if raise_on_error:
            for result in results:
                if isinstance(result, CommandError):
                    raise result
        return results

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.reset()
