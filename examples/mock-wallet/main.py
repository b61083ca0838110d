"""A page talking to an in-process wallet that approves everything.

The wallet reads outbound host messages from a queue and answers them
through the provider's inbound surface, the way a native app would.
"""

import asyncio
import logging

from inpage_provider import Provider, ProviderConfig, ProviderRpcError, QueueSink

WALLET_ADDRESS = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"


async def wallet(provider: Provider, sink: QueueSink) -> None:
    while True:
        message = await sink.next_message()
        print(f"wallet <- {message['method']} id={message['id']}")
        match message["method"]:
            case "requestAccounts":
                provider.set_address(WALLET_ADDRESS)
                provider.deliver_result(message["id"], [provider.address])
            case "signPersonalMessage":
                provider.deliver_result(message["id"], "0x" + "ab" * 65)
            case _:
                provider.deliver_error(message["id"], "User rejected the request.")


async def main() -> None:
    sink = QueueSink()
    provider = Provider(ProviderConfig(chain_id=1), sink)
    wallet_task = asyncio.create_task(wallet(provider, sink))

    try:
        print("accounts:", await provider.request({"method": "eth_accounts"}))
        print("enable:", await provider.enable())
        signature = await provider.request(
            {
                "id": "sig-1",
                "method": "personal_sign",
                "params": ["hello", WALLET_ADDRESS],
            }
        )
        print("signature:", signature[:10] + "...")
        try:
            await provider.request(
                {"method": "eth_sendTransaction", "params": [{"to": WALLET_ADDRESS}]}
            )
        except ProviderRpcError as e:
            print("rejected:", e.message)
    finally:
        wallet_task.cancel()
        await provider.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(main())
