import os

from smolagents import (
    CodeAgent,
    InferenceClientModel,
    OpenAIServerModel,
    RateLimiter,
    RetryPolicy,
    VisitWebpageTool,
)


# Make sure to setup the necessary environment variables!

primary_model = OpenAIServerModel(model_id="gpt-4o-mini", api_key=os.getenv("OPENAI_API_KEY"))
fallback_model = InferenceClientModel(model_id="Qwen/Qwen2.5-Coder-32B-Instruct", token=os.getenv("HF_TOKEN"))

agent = CodeAgent(
    tools=[VisitWebpageTool()],
    model=primary_model,
    fallback_models=[fallback_model],
    retry_policy=RetryPolicy(max_attempts=3, base_interval=1.0, backoff="exponential"),
    circuit_threshold=3,
    rate_limiter=RateLimiter(rate=2, capacity=4),
    token_budget=50_000,
)

agent.on("failover", lambda event: print(f"Failing over: {event.from_model_id} -> {event.to_model_id}"))
agent.on("retry", lambda event: print(f"Retry {event.attempt}/{event.max_attempts} in {event.delay:.1f}s"))
agent.on("task_complete", lambda event: print(f"Done ({event.outcome}) after {event.steps_taken} steps"))

agent.run("How many seconds would it take for a leopard at full speed to run through Pont des Arts?")
