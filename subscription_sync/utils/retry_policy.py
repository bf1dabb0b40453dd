import time


class RetryBudgetExceeded(Exception):
    """Raised when a polled condition never became true within the policy."""

    def __init__(self, attempts, elapsed):
        super().__init__(f"Gave up after {attempts} attempts in {elapsed:.2f}s")
        self.attempts = attempts
        self.elapsed = elapsed


class RetryPolicy:
    """
    Bounded retry loop: a hard attempt ceiling plus a total time budget.

    Delays grow exponentially from ``base_delay`` and are capped by
    ``max_delay``; no sleep ever runs past the remaining budget.
    """

    def __init__(self, max_attempts=3, base_delay=0.5, max_delay=4.0, time_budget=10.0,
                 sleep=time.sleep, clock=time.monotonic):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.time_budget = time_budget
        self._sleep = sleep
        self._clock = clock

    def delay_for(self, attempt):
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def poll(self, condition):
        """
        Call ``condition`` until it returns a truthy value and return that value.

        Raises ``RetryBudgetExceeded`` once attempts or time run out.
        """
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            result = condition()
            if result:
                return result
            if not self._wait(attempt, started):
                raise RetryBudgetExceeded(attempt, self._clock() - started)

    def _wait(self, attempt, started):
        if attempt >= self.max_attempts:
            return False
        remaining = self.time_budget - (self._clock() - started)
        if remaining <= 0:
            return False
        self._sleep(min(self.delay_for(attempt), remaining))
        return True
