"""Executor that runs submitted work on the calling thread.

Lets API tests read a question right after POST and see the finished
answer, while the app still goes through the inline dispatcher's
submit path.
"""

from concurrent.futures import Executor, Future


class SynchronousExecutor(Executor):
    def __init__(self):
        self._shutdown = False

    def submit(self, fn, /, *args, **kwargs) -> Future:
        if self._shutdown:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self._shutdown = True
