"""
Hello World: stream your first convogate turn.

No API key needed. Runs entirely offline with the built-in LocalProvider.

Prerequisites: None
    pip install convogate

Run:
    python examples/01_hello_world.py
"""

import asyncio

from convogate import EventType, LocalToolRegistry, Message, Orchestrator, OrchestratorConfig, Role, ToolBridge
from convogate.providers.stubs import LocalProvider

shop = LocalToolRegistry("shop")


@shop.tool(description="Look up the price of a product")
def get_price(product: str) -> str:
    prices = {"laptop": "$999", "phone": "$699", "headphones": "$149"}
    return prices.get(product.lower(), f"No price found for {product}")


@shop.tool(description="Check if a product is in stock")
def check_stock(product: str) -> str:
    stock = {"laptop": "5 left", "phone": "Out of stock", "headphones": "20 left"}
    return stock.get(product.lower(), f"Unknown product: {product}")


async def main() -> None:
    async with ToolBridge([shop]) as bridge:
        toolset = await bridge.build_toolset()
        print(f"Toolset: {', '.join(d.name for d in toolset)}\n")

        orchestrator = Orchestrator(LocalProvider(delay=0.05), bridge, OrchestratorConfig(max_tool_rounds=3))
        turn = orchestrator.run([Message(role=Role.USER, content="How much is a laptop?")])

        print("Response: ", end="")
        async for event in turn:
            if event.type is EventType.DELTA:
                print(event.text, end="", flush=True)
        print()

    outcome = turn.outcome
    print(f"Status: {outcome.status.value}")
    print(f"Tool rounds: {outcome.rounds}")
    print(outcome.usage)


if __name__ == "__main__":
    asyncio.run(main())
