import argparse
import logging

from services.blockchain.sources import FrameTransferSource
from services.graph.store import GraphStore
from services.scoring.risk_engine import RiskScoringEngine, score_top_wallets, summarize_scores

TX_PATH = "data/transactions.csv"


def main(argv=None):
    parser = argparse.ArgumentParser(description="Score the neighbourhood of one wallet from a transfers CSV")
    parser.add_argument("address")
    parser.add_argument("--tx-path", default=TX_PATH)
    parser.add_argument("--labels-path", default=None)
    parser.add_argument("--depth", type=int, default=2)
    parser.add_argument("--top", type=int, default=20)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    source = FrameTransferSource.from_csv(args.tx_path, args.labels_path)
    g = GraphStore(source).load(args.address, depth=args.depth)
    engine = RiskScoringEngine()

    top = score_top_wallets(g, engine, top_n=args.top)
    print("\n=== Top Risk Wallets ===")
    print(top.to_string(index=False))

    summary = summarize_scores([engine.score(g, w) for w in g.nodes])
    print(f"\nMean score: {summary['mean_score']}  levels: {summary['levels']}")
    print(f"Graph wallets: {len(g.nodes)}, transfers: {len(g.edges)}")


if __name__ == "__main__":
    main()
