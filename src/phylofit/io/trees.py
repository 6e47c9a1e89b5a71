"""
Phylogenetic tree parsing and manipulation.

Trees are stored as an arena: ``tree.nodes[i]`` is the node with id ``i`` and
parent/child links are integer ids. Ids are dense and assigned in preorder
(the root is always 0); they are reassigned after every structural change.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional


@dataclass
class TreeNode:
    """
    Phylogenetic tree node.

    Attributes
    ----------
    id : int
        Dense node identifier (preorder index)
    name : Optional[str]
        Node name (leaves, or labeled internal nodes)
    parent : Optional[int]
        Id of the parent node, None for the root
    children : list[int]
        Ids of the child nodes
    branch_length : float
        Length of the branch to the parent
    label : Optional[str]
        Branch label (e.g., '#1')
    """

    id: int
    name: Optional[str] = None
    parent: Optional[int] = None
    children: list[int] = field(default_factory=list)
    branch_length: float = 0.0
    label: Optional[str] = None

    @property
    def is_leaf(self) -> bool:
        """Check if node is a leaf."""
        return len(self.children) == 0


@dataclass
class Tree:
    """
    Rooted phylogenetic tree.

    Attributes
    ----------
    nodes : list[TreeNode]
        All nodes, indexed by id; ``nodes[0]`` is the root
    """

    nodes: list[TreeNode]

    @property
    def root(self) -> TreeNode:
        return self.nodes[0]

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def n_leaves(self) -> int:
        return sum(1 for node in self.nodes if node.is_leaf)

    @property
    def leaf_names(self) -> list[str]:
        return [
            node.name if node.name else str(node.id)
            for node in self.postorder() if node.is_leaf
        ]

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Parse Newick format tree string.

        Parameters
        ----------
        newick_string : str
            Newick format tree; a missing trailing semicolon is tolerated

        Returns
        -------
        Tree
            Parsed tree

        Examples
        --------
        >>> tree = Tree.from_newick("((human:0.1,chimp:0.1):0.2,mouse:0.5);")
        >>> tree.n_leaves
        3
        """
        # Remove comments
        newick = re.sub(r'\[[^\]]*\]', '', newick_string)
        newick = re.sub(r'//.*', '', newick)
        newick = newick.replace('\n', '').replace('\t', '').replace('\r', '').strip()

        if not newick:
            raise ValueError("Invalid Newick format: no tree found")
        if ';' in newick:
            newick = newick[:newick.index(';')]

        nodes: list[TreeNode] = []

        def skip_whitespace(s: str, pos: int) -> int:
            while pos < len(s) and s[pos] in ' \t\n\r':
                pos += 1
            return pos

        def parse_node(s: str, start: int, parent: Optional[int]) -> int:
            """Parse a node from position start; returns the new position."""
            node = TreeNode(id=len(nodes), parent=parent)
            nodes.append(node)
            pos = skip_whitespace(s, start)

            if pos < len(s) and s[pos] == '(':
                pos = skip_whitespace(s, pos + 1)
                while True:
                    node.children.append(len(nodes))
                    pos = skip_whitespace(s, parse_node(s, pos, node.id))

                    if pos < len(s) and s[pos] == ',':
                        pos = skip_whitespace(s, pos + 1)
                        continue
                    elif pos < len(s) and s[pos] == ')':
                        pos = skip_whitespace(s, pos + 1)
                        break
                    else:
                        raise ValueError(f"Expected ',' or ')' at position {pos}")

            name_start = pos
            while pos < len(s) and s[pos] not in ',:();# \t\n\r':
                pos += 1
            if pos > name_start:
                node.name = s[name_start:pos]

            pos = skip_whitespace(s, pos)

            # Branch label (e.g., #1)
            if pos < len(s) and s[pos] == '#':
                pos += 1
                label_start = pos
                while pos < len(s) and s[pos] not in ',:(); \t\n\r':
                    pos += 1
                node.label = '#' + s[label_start:pos]

            pos = skip_whitespace(s, pos)

            if pos < len(s) and s[pos] == ':':
                pos = skip_whitespace(s, pos + 1)
                length_start = pos
                while pos < len(s) and s[pos] not in ',(); \t\n\r':
                    pos += 1
                try:
                    node.branch_length = float(s[length_start:pos])
                except ValueError:
                    raise ValueError(f"Invalid branch length: {s[length_start:pos]}")
                if node.branch_length < 0:
                    raise ValueError(f"Negative branch length: {s[length_start:pos]}")

            return pos

        pos = skip_whitespace(newick, parse_node(newick, 0, None))
        if pos != len(newick):
            raise ValueError(f"Unexpected character {newick[pos]!r} at position {pos}")

        tree = cls(nodes=nodes)
        tree._renumber(0)
        return tree

    @classmethod
    def from_file(cls, filepath: Path | str) -> "Tree":
        """Read the first Newick tree from a file."""
        with open(filepath, 'r') as f:
            return cls.from_newick(f.read())

    def to_newick(self, precision: int = 8) -> str:
        """
        Format the tree as a Newick string.

        Parameters
        ----------
        precision : int, default=8
            Significant digits for branch lengths

        Returns
        -------
        str
            Newick string terminated by a semicolon
        """
        def fmt(node: TreeNode) -> str:
            if node.is_leaf:
                text = node.name or ""
            else:
                text = "(" + ",".join(fmt(self.nodes[c]) for c in node.children) + ")"
                if node.name:
                    text += node.name
            if node.label:
                text += " " + node.label
            if node.parent is not None:
                text += f":{node.branch_length:.{precision}g}"
            return text

        return fmt(self.root) + ";"

    def copy(self) -> "Tree":
        """Deep copy of the tree."""
        return Tree(nodes=[
            TreeNode(
                id=node.id,
                name=node.name,
                parent=node.parent,
                children=list(node.children),
                branch_length=node.branch_length,
                label=node.label,
            )
            for node in self.nodes
        ])

    def postorder(self) -> list[TreeNode]:
        """
        Return nodes in post-order traversal (leaves to root).

        Returns
        -------
        list[TreeNode]
            Nodes in post-order
        """
        result = []
        stack = [(self.root.id, False)]
        while stack:
            node_id, visited = stack.pop()
            node = self.nodes[node_id]
            if visited or node.is_leaf:
                result.append(node)
            else:
                stack.append((node_id, True))
                for child in reversed(node.children):
                    stack.append((child, False))
        return result

    def preorder(self) -> list[TreeNode]:
        """Return nodes in pre-order traversal (root to leaves)."""
        result = []
        stack = [self.root.id]
        while stack:
            node = self.nodes[stack.pop()]
            result.append(node)
            stack.extend(reversed(node.children))
        return result

    def get_branches(self) -> list[tuple[TreeNode, TreeNode]]:
        """
        Get all branches as (parent, child) pairs, in postorder of the child.

        Returns
        -------
        list[tuple[TreeNode, TreeNode]]
            List of (parent, child) tuples for each branch
        """
        return [
            (self.nodes[node.parent], node)
            for node in self.postorder() if node.parent is not None
        ]

    def get_node(self, name: str) -> Optional[TreeNode]:
        """Find a node by name, or by branch label when ``name`` starts with '#'."""
        for node in self.nodes:
            if node.name == name or (name.startswith('#') and node.label == name):
                return node
        return None

    def get_nodes(self, name: str) -> list[TreeNode]:
        """All nodes matching a name or a '#k' branch label."""
        return [
            node for node in self.nodes
            if node.name == name or (name.startswith('#') and node.label == name)
        ]

    def descendants(self, node_id: int) -> list[int]:
        """Ids of the subtree rooted at ``node_id`` (including itself)."""
        result = []
        stack = [node_id]
        while stack:
            nid = stack.pop()
            result.append(nid)
            stack.extend(self.nodes[nid].children)
        return sorted(result)

    def total_length(self) -> float:
        """Sum of all branch lengths."""
        return float(sum(node.branch_length for node in self.nodes if node.parent is not None))

    def scale(self, factor: float) -> None:
        """Multiply every branch length by ``factor``."""
        for node in self.nodes:
            node.branch_length *= factor

    def prune(self, keep_names: Iterable[str]) -> list[str]:
        """
        Remove leaves whose names are not in ``keep_names``.

        Internal nodes left with a single child are collapsed (the child
        inherits the summed branch length); internal nodes left with no
        children are removed. Node ids are reassigned afterwards.

        Parameters
        ----------
        keep_names : iterable of str
            Leaf names to retain

        Returns
        -------
        list[str]
            Names of the removed leaves, in postorder
        """
        keep = set(keep_names)
        pruned = [
            node.name if node.name else str(node.id)
            for node in self.postorder()
            if node.is_leaf and node.name not in keep
        ]
        if not pruned:
            return pruned

        def collapse(node_id: int) -> Optional[int]:
            node = self.nodes[node_id]
            if node.is_leaf:
                return node_id if node.name in keep else None
            survivors = [c for c in (collapse(c) for c in node.children) if c is not None]
            if not survivors:
                return None
            if len(survivors) == 1:
                child = self.nodes[survivors[0]]
                child.branch_length += node.branch_length
                child.parent = node.parent
                return child.id
            node.children = survivors
            for c in survivors:
                self.nodes[c].parent = node_id
            return node_id

        new_root = collapse(self.root.id)
        if new_root is None:
            self.nodes = []
            return pruned

        self.nodes[new_root].parent = None
        self.nodes[new_root].branch_length = 0.0
        self._renumber(new_root)
        return pruned

    def _renumber(self, root_id: int) -> None:
        """Reassign dense preorder ids starting from ``root_id``."""
        order = []
        stack = [root_id]
        while stack:
            nid = stack.pop()
            order.append(nid)
            stack.extend(reversed(self.nodes[nid].children))

        new_id = {old: new for new, old in enumerate(order)}
        renumbered = []
        for old in order:
            node = self.nodes[old]
            renumbered.append(TreeNode(
                id=new_id[old],
                name=node.name,
                parent=new_id[node.parent] if old != root_id and node.parent is not None else None,
                children=[new_id[c] for c in node.children],
                branch_length=node.branch_length,
                label=node.label,
            ))
        self.nodes = renumbered
