"""
State-Graph Visualization Generator

This script:
1. Reads the transition tables of the navigation and retry state machines
2. Writes them to a JSON report
3. Renders each graph as a diagram (PNG/SVG) with graphviz
4. Prints a short text summary (states, edges, terminal states)

Usage:
    python generate_diagrams.py [--format png|svg|all] [--output ./images/]
"""

import argparse
import json
import os
from collections import defaultdict

import graphviz

from mapcrawl import navigator, retry

GRAPHS = {
    "navigation": {
        "transitions": navigator.TRANSITIONS,
        "start": [navigator.NavState.START],
        "terminal": [navigator.NavState.USERNAMES_COLLECTED, navigator.NavState.DONE],
    },
    "retry": {
        "transitions": retry.TRANSITIONS,
        "start": [retry.RetryState.PENDING],
        "terminal": [retry.RetryState.SUCCEEDED, retry.RetryState.EXHAUSTED],
    },
}


def summarize(name: str, graph: dict) -> dict:
    """Collect states, edges and out-degree for one graph."""
    out_degree = defaultdict(int)
    states = []
    for src, dst, _ in graph["transitions"]:
        out_degree[src] += 1
        for s in (src, dst):
            if s not in states:
                states.append(s)
    return {
        "name": name,
        "states": states,
        "edges": [
            {"from": src, "to": dst, "guard": guard}
            for src, dst, guard in graph["transitions"]
        ],
        "out_degree": dict(out_degree),
        "start": graph["start"],
        "terminal": graph["terminal"],
    }


def generate_json_report(summaries: list, output_path: str) -> str:
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(summaries, f, indent=2)
    print(f"[✓] JSON report: {output_path}")
    return output_path


def generate_text_report(summaries: list) -> str:
    lines = []
    for s in summaries:
        lines.append("=" * 60)
        lines.append(f"  {s['name'].upper()} STATE MACHINE")
        lines.append("=" * 60)
        lines.append(f"  States:   {len(s['states'])}")
        lines.append(f"  Edges:    {len(s['edges'])}")
        lines.append(f"  Start:    {', '.join(s['start'])}")
        lines.append(f"  Terminal: {', '.join(s['terminal'])}")
        for edge in s["edges"]:
            lines.append(f"    {edge['from']:<24} → {edge['to']:<24} [{edge['guard']}]")
        lines.append("")
    return "\n".join(lines)


def generate_graphviz_diagram(summary: dict, output_format: str, output_dir: str) -> str:
    """Render one state graph; returns the written file path."""
    dot = graphviz.Digraph(name=summary["name"], format=output_format)
    dot.attr(rankdir="LR", fontname="Helvetica")
    dot.attr("node", shape="box", style="rounded,filled", fillcolor="#eef3fb", fontname="Helvetica")
    dot.attr("edge", fontname="Helvetica", fontsize="9")

    for state in summary["states"]:
        if state in summary["terminal"]:
            dot.node(state, shape="doubleoctagon", fillcolor="#d8f0d8")
        elif state in summary["start"]:
            dot.node(state, fillcolor="#fff4cc")
        else:
            dot.node(state)

    for edge in summary["edges"]:
        dot.edge(edge["from"], edge["to"], label=edge["guard"])

    path = dot.render(filename=summary["name"], directory=output_dir, cleanup=True)
    print(f"[✓] Diagram: {path}")
    return path


def main():
    parser = argparse.ArgumentParser(description="Render crawler state machines")
    parser.add_argument("--format", choices=["png", "svg", "all"], default="png")
    parser.add_argument("--output", default="images/")
    args = parser.parse_args()

    os.makedirs(args.output, exist_ok=True)
    summaries = [summarize(name, graph) for name, graph in GRAPHS.items()]

    print(generate_text_report(summaries))
    generate_json_report(summaries, os.path.join(args.output, "state_machines.json"))

    formats = ["png", "svg"] if args.format == "all" else [args.format]
    for fmt in formats:
        for summary in summaries:
            generate_graphviz_diagram(summary, fmt, args.output)


if __name__ == "__main__":
    main()
